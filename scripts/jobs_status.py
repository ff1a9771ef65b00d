"""Print job queue counters reported by the gateway."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for queue depth checks."""

    parser = argparse.ArgumentParser(description="Fetch queue counters from the gateway.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()

    resp = httpx.get(f"{args.base_url}/api/v1/test/jobs/status", timeout=10.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
