# scripts/mint_token.py
import os  # read environment variables
import argparse  # parse CLI args
from datetime import datetime, timedelta, timezone  # create an expiry timestamp
from jose import jwt  # create a JWT token

def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser(description="Mint an EventTribe session token")  # CLI parser
    parser.add_argument("--user-id", required=True)  # becomes the sub claim
    parser.add_argument("--role", choices=["user", "organizer", "admin"], default="user")  # caller role
    parser.add_argument("--ttl-minutes", type=int, default=60)  # token lifetime
    args = parser.parse_args()  # parse args

    secret = os.environ.get("SESSION_SIGNING_SECRET", "dev_secret_change_me")  # signing secret

    exp_ts = int((datetime.now(timezone.utc) + timedelta(minutes=args.ttl_minutes)).timestamp())  # expiry as unix seconds

    payload = {"sub": args.user_id, "role": args.role, "exp": exp_ts}  # claims read by current_session

    print(jwt.encode(payload, secret, algorithm="HS256"))  # output token to stdout

if __name__ == "__main__":  # run as script
    main()  # call main
