#!/usr/bin/env python3
"""
Relay Status Monitor
Simple script to watch meetings and presence on the relay service
"""

import os
import time
from datetime import datetime

import requests


def get_meetings(base_url):
    """Get meeting summaries from the service."""
    try:
        response = requests.get(f"{base_url}/meetings", timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        return {"error": str(e), "status": "connection_failed"}


def get_presence(base_url, meeting_id):
    try:
        response = requests.get(f"{base_url}/meetings/{meeting_id}/presence", timeout=5)
        response.raise_for_status()
        return response.json().get("state", {})
    except requests.exceptions.RequestException:
        return {}


def format_joined(timestamp):
    if not timestamp:
        return "unknown"
    return datetime.fromtimestamp(timestamp).strftime("%H:%M:%S")


def print_status(base_url, meetings):
    """Print formatted status information."""
    print(f"\n{'='*60}")
    print(f"Relay Status - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"{'='*60}")

    if isinstance(meetings, dict) and "error" in meetings:
        print(f"Error: {meetings['error']}")
        return

    if not meetings:
        print("No active meetings")
        return

    for meeting in meetings:
        meeting_id = meeting["meeting_id"]
        print(f"Meeting {meeting_id}: {meeting['connections']} connections")
        state = get_presence(base_url, meeting_id)
        for key, presences in sorted(state.items()):
            for presence in presences:
                name = presence.get("displayName", key)
                print(f"   - {name} ({key}) joined {format_joined(presence.get('joinedAt'))}")


def main():
    """Main monitoring loop."""
    base_url = os.getenv("RELAY_HTTP_URL", "http://localhost:8105")
    print(f"Relay Status Monitor ({base_url})")
    print("Press Ctrl+C to stop")

    try:
        while True:
            print_status(base_url, get_meetings(base_url))
            time.sleep(10)

    except KeyboardInterrupt:
        print("\nMonitor stopped")


if __name__ == "__main__":
    main()
