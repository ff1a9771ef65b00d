"""Schedule a manual redelivery of one webhook log.

This is the only way a `failed` log re-enters the delivery pipeline: the log
is reset to `pending` with zero attempts and an immediate job is queued.
"""

import argparse
import json

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry one webhook delivery log.")
    parser.add_argument("log_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="key_test_abc123")
    parser.add_argument("--api-secret", default="secret_test_xyz789")
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.base_url}/api/v1/webhooks/{args.log_id}/retry",
        headers={"X-Api-Key": args.api_key, "X-Api-Secret": args.api_secret},
        timeout=10.0,
    )
    if resp.status_code >= 400:
        raise SystemExit(f"retry rejected status={resp.status_code} body={resp.text}")
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
