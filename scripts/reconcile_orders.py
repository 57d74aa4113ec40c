"""Fetch and print the order intent reconciliation summary."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Fetch order intent reconciliation summary.")
    parser.add_argument("--orders-url", default="http://localhost:8000")
    parser.add_argument("--fail-on-attention", action="store_true", help="Exit 1 when intents need attention")
    args = parser.parse_args()

    resp = httpx.get(f"{args.orders_url}/reconciliation", timeout=10.0)
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if args.fail_on_attention and report["needs_attention"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
