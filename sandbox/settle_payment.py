#!/usr/bin/env python3
"""
Settle a sandbox payment by posting a signed provider webhook to a running service.

    python sandbox/settle_payment.py <payment_id> <amount> <currency> [status]
"""

import json
import logging
import os
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "app"))

from wallet_ledger.signature import compute_signature  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sandbox-settle")

SERVICE_URL = os.getenv("WALLET_LEDGER_URL", "http://localhost:8000")
WEBHOOK_SECRET = os.getenv("COINGATE_WEBHOOK_SECRET") or os.getenv("CRYPTO_WEBHOOK_SECRET")
SIGNATURE_HEADER = os.getenv("WEBHOOK_SIGNATURE_HEADER", "X-CoinGate-Signature")


def main(argv) -> int:
    if len(argv) < 4:
        print(__doc__)
        return 2
    payment_id, amount, currency = argv[1], argv[2], argv[3].upper()
    status = argv[4] if len(argv) > 4 else "paid"

    body = json.dumps(
        {
            "id": payment_id,
            "status": status,
            "price_amount": amount,
            "price_currency": currency,
            "receive_currency": currency,
        }
    ).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if WEBHOOK_SECRET:
        headers[SIGNATURE_HEADER] = compute_signature(WEBHOOK_SECRET, body)
    else:
        logger.warning("No webhook secret set; sending an unsigned webhook")

    response = httpx.post(f"{SERVICE_URL}/webhooks/payments", content=body, headers=headers)
    logger.info("Webhook answered %s: %s", response.status_code, response.text)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
