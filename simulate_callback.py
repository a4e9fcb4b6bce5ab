#!/usr/bin/env python3
"""
Send signed gateway callbacks to a running CourtPay server, or watch its
payment event stream.

Reads the same .env as the server, so signatures match its secrets.

Usage:
    python simulate_callback.py vnpay <order_ref> <amount> [response_code]
    python simulate_callback.py payos <order_ref> <amount> [code]
    python simulate_callback.py watch
"""
import json
import sys

import requests

from courtpay.config import Settings, payos_config, vnpay_config
from courtpay.mocks.payment_processor import GatewaySandbox

BASE_URL = "http://localhost:8000"


def send_callback(gateway: str, order_ref: str, amount: int, code: str = "00"):
    """Post one signed IPN/webhook and print the acknowledgement."""
    source = Settings()
    sandbox = GatewaySandbox(vnpay_config(source), payos_config(source))

    print(f"📨 Sending {gateway} callback for {order_ref}: {amount} VND (code {code})")

    try:
        if gateway == "vnpay":
            params = sandbox.vnpay_callback(order_ref, amount, response_code=code)
            response = requests.get(f"{BASE_URL}/api/payments/vnpay/ipn", params=params, timeout=30)
        else:
            body = sandbox.payos_webhook(order_ref, amount, code=code)
            response = requests.post(f"{BASE_URL}/api/payments/payos/webhook", json=body, timeout=30)

        print(f"🔗 HTTP {response.status_code}")
        print(json.dumps(response.json(), indent=2))

    except requests.exceptions.ConnectionError:
        print("❌ Connection error - is the server running?")


def watch_events():
    """Print payment events as the server publishes them."""
    url = f"{BASE_URL}/api/events/stream"
    print(f"🔗 Connecting to: {url}")
    print("=" * 70)

    event_type = None
    try:
        response = requests.get(url, stream=True, timeout=(10, None))

        for line in response.iter_lines():
            if not line:
                continue

            line = line.decode('utf-8')
            if line.startswith('event:'):
                event_type = line.split(':', 1)[1].strip()
            elif line.startswith('data:'):
                data = json.loads(line.split(':', 1)[1].strip())
                print(f"📡 {event_type}: txn={data.get('transactionId')} "
                      f"booking={data.get('bookingId')} amount={data.get('amount')} "
                      f"reason={data.get('reason', '-')}")

    except requests.exceptions.ConnectionError:
        print("❌ Connection error - is the server running?")
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")


if __name__ == "__main__":
    if len(sys.argv) >= 2 and sys.argv[1] == "watch":
        watch_events()
        sys.exit(0)

    if len(sys.argv) < 4 or sys.argv[1] not in ("vnpay", "payos"):
        print(__doc__)
        sys.exit(1)

    send_callback(
        sys.argv[1],
        sys.argv[2],
        int(sys.argv[3]),
        sys.argv[4] if len(sys.argv) > 4 else "00",
    )
