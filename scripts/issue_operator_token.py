#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import time

from billing.security import issue_operator_token


def main() -> int:
    parser = argparse.ArgumentParser(description="Issue an HS256 bearer token for the ops API.")
    parser.add_argument("subject", help="Operator identity placed in the sub claim.")
    parser.add_argument("--role", default="operator")
    parser.add_argument("--ttl-s", type=int, default=3600)
    args = parser.parse_args()

    secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
    if not secret:
        parser.error("JWT_SHARED_SECRET must be set")
    token = issue_operator_token(
        subject=args.subject,
        secret=secret,
        issuer=os.environ.get("JWT_ISSUER", "").strip(),
        audience=os.environ.get("JWT_AUDIENCE", "").strip(),
        role=args.role,
        ttl_s=args.ttl_s,
        now_ts=int(time.time()),
    )
    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
