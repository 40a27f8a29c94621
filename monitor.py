#!/usr/bin/env python3
"""
Pairing Status Monitor
Simple script to poll a running pairing service and print its state
"""

import requests
import time
from datetime import datetime


def get_status(base_url="http://localhost:8104"):
    """Get client status from the service."""
    try:
        response = requests.get(f"{base_url}/status", timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        return {"error": str(e), "status": "connection_failed"}


def describe_phase(status):
    """One-word summary of where the client is."""
    if "error" in status:
        return "unreachable"
    if status.get("connection_state") == "connected":
        return "connected"
    if status.get("partner_id"):
        return "negotiating"
    if status.get("searching"):
        return "searching"
    return "idle"


def format_status(status):
    """Return formatted status lines."""
    lines = [
        "=" * 60,
        f"Pairing Status - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "=" * 60,
    ]

    if "error" in status:
        lines.append(f"Error: {status['error']}")
        return lines

    lines.append(f"Client:      {status.get('client_id')}")
    lines.append(f"Phase:       {describe_phase(status).upper()}")
    lines.append(f"Partner:     {status.get('partner_id') or '-'}")
    lines.append(f"Channel:     {status.get('session_channel') or '-'}")
    if status.get("is_offerer") is not None:
        lines.append(f"Role:        {'offerer' if status['is_offerer'] else 'answerer'}")
    lines.append(f"Negotiation: {status.get('negotiation_phase') or '-'}")
    lines.append(f"Connection:  {status.get('connection_state') or '-'}")
    lines.append(f"Queued:      {status.get('queued_signals', 0)}")
    return lines


def main():
    """Main monitoring loop."""
    print("Pairing Status Monitor")
    print("Press Ctrl+C to stop")

    try:
        while True:
            print("\n".join(format_status(get_status())))

            # Wait before next check
            time.sleep(10)

    except KeyboardInterrupt:
        print("\nMonitor stopped")


if __name__ == "__main__":
    main()
