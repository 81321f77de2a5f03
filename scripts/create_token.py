"""Issue a development access token signed with APP_AUTH_JWT_SECRET.

Usage:
    python scripts/create_token.py --user-id alice --email alice@example.com
"""

import argparse
from datetime import timedelta

from invoicehub.shared.config import get_settings
from invoicehub.shared.session import create_access_token

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Issue a development access token")
    parser.add_argument("--user-id", required=True, help="Token subject")
    parser.add_argument("--email", default=None, help="Optional email claim")
    parser.add_argument("--hours", type=float, default=8, help="Token lifetime in hours")
    args = parser.parse_args()

    print(
        create_access_token(
            get_settings(),
            args.user_id,
            email=args.email,
            expires_in=timedelta(hours=args.hours),
        )
    )
