#!/usr/bin/env python3
"""Request testnet tokens from a running faucet.

This script shows how to:
1. Request a PoW challenge from the API
2. Solve the challenge locally
3. Submit the solution together with the recipient address

Usage:
    python examples/pow_demo.py 0xYOUR_ADDRESS [STRK|ETH|BOTH] [--url http://localhost:3000]
"""

import argparse
import json
import sys
import time
from typing import Any

import httpx

from starknet_faucet.core.pow import estimate_attempts, solve_challenge


def request_tokens(base_url: str, address: str, token: str) -> int:
    """Run the challenge, solve, request cycle against ``base_url``."""
    api = f"{base_url.rstrip('/')}/api/v1"
    with httpx.Client(timeout=30.0) as client:
        info = client.get(f"{api}/info").json()
        print(f"🌐 Network: {info['network']}")
        print(f"💧 Per request: {info['limits']['strk_per_request']} STRK / "
              f"{info['limits']['eth_per_request']} ETH")
        print()

        response = client.post(f"{api}/challenge")
        if response.status_code != 200:
            print(f"❌ Could not get a challenge: {response.json()['detail']}")
            return 1
        challenge = response.json()
        difficulty = challenge["difficulty"]
        print(f"🔐 Challenge {challenge['challenge_id']} (difficulty {difficulty}, "
              f"~{estimate_attempts(difficulty):,} hashes, expires in {challenge['expires_in']}s)")

        started = time.monotonic()
        nonce = solve_challenge(challenge["challenge"], difficulty)
        print(f"  ✅ Solution found: nonce={nonce} in {time.monotonic() - started:.2f}s")
        print()

        payload: dict[str, Any] = {
            "address": address,
            "token": token,
            "challenge_id": challenge["challenge_id"],
            "nonce": nonce,
            "difficulty": difficulty,
        }
        response = client.post(f"{api}/request", json=payload)
        body = response.json()
        if response.status_code != 200:
            print(f"❌ Request rejected ({response.status_code}):")
            print(json.dumps(body["detail"], indent=2))
            return 1

        print(f"📦 {body['message']}")
        for tx in body.get("transactions") or [body]:
            print(f"  {tx['amount']} {tx['token']}: {tx['explorer_url']}")

        quota = client.get(f"{api}/quota").json()
        print()
        print(f"📊 Daily quota left: {quota['daily_limit']['remaining']}/{quota['daily_limit']['total']}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("address")
    parser.add_argument("token", nargs="?", default="STRK", choices=["STRK", "ETH", "BOTH"])
    parser.add_argument("--url", default="http://localhost:3000")
    args = parser.parse_args()
    try:
        return request_tokens(args.url, args.address, args.token)
    except httpx.HTTPError as exc:
        print(f"❌ Faucet unreachable: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
