#!/usr/bin/env python3
"""
Simulate random coin transfers between users and check the ledger afterwards.
Log in (auto-register) N users -> random (sender, receiver) pairs -> sendCoin
-> read /api/info of every user and verify the total number of coins is unchanged.

Usage:
  python random_transfers.py --users 20
  python random_transfers.py --users 50 --rounds 500 --workers 10
  python random_transfers.py --base-url https://shop.example.com --no-verify

Install:
  pip install requests
"""

import argparse
import random
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed

try:
    import requests
except ImportError:
    print("Install first: pip install requests")
    sys.exit(1)


def login(base_url: str, username: str, password: str, verify: bool = True) -> dict | None:
    """Authenticate (registers on first call) and return the bearer token."""
    url = f"{base_url}/api/auth"
    try:
        r = requests.post(url, json={"username": username, "password": password}, timeout=10, verify=verify)
    except requests.RequestException:
        return None
    if r.status_code != 200:
        return None
    return {"username": username, "token": r.json()["token"]}


def get_info(base_url: str, token: str, verify: bool = True) -> dict | None:
    url = f"{base_url}/api/info"
    try:
        r = requests.get(url, headers={"Authorization": f"Bearer {token}"}, timeout=10, verify=verify)
    except requests.RequestException:
        return None
    if r.status_code == 200:
        return r.json()
    return None


def send_coin(base_url: str, token: str, to_user: str, amount: int, verify: bool = True) -> dict:
    """Send coins. Returns {ok, detail}."""
    url = f"{base_url}/api/sendCoin"
    try:
        r = requests.post(
            url,
            json={"toUser": to_user, "amount": amount},
            headers={"Authorization": f"Bearer {token}"},
            timeout=15,
            verify=verify,
        )
    except requests.RequestException as e:
        return {"ok": False, "detail": str(e)}
    if r.status_code == 200:
        return {"ok": True, "detail": r.json()}
    return {"ok": False, "detail": f"HTTP {r.status_code}: {r.text[:200]}"}


def main():
    parser = argparse.ArgumentParser(description="Random coin transfers + conservation check")
    parser.add_argument("--base-url", "-u", default="http://localhost:8080", help="Base URL")
    parser.add_argument("--users", "-n", type=int, default=20, help="Number of users (default: 20)")
    parser.add_argument("--prefix", default="load_user", help="Username prefix (default: load_user)")
    parser.add_argument("--password", "-p", default="load-test-pw", help="Password shared by all users")
    parser.add_argument("--rounds", "-r", type=int, default=200, help="Number of transfers (default: 200)")
    parser.add_argument("--workers", "-w", type=int, default=10, help="Parallel workers (default: 10)")
    parser.add_argument("--min-amount", type=int, default=1, help="Min amount (default: 1)")
    parser.add_argument("--max-amount", type=int, default=300, help="Max amount (default: 300)")
    parser.add_argument("--no-verify", action="store_true", help="Skip SSL verification")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    verify = not args.no_verify

    print("=" * 60)
    print("  RANDOM TRANSFER SIMULATOR")
    print("=" * 60)
    print(f"  Base URL:   {base_url}")
    print(f"  Users:      {args.users}")
    print(f"  Rounds:     {args.rounds}")
    print(f"  Workers:    {args.workers}")
    print(f"  Amount:     {args.min_amount:,} - {args.max_amount:,} coins")
    print()

    # --- Step 1: log in every user ---
    print(f"[1/3] Logging in {args.users} users...")
    usernames = [f"{args.prefix}_{i:04d}" for i in range(args.users)]
    sessions = []
    with ThreadPoolExecutor(max_workers=args.workers) as ex:
        futures = [ex.submit(login, base_url, name, args.password, verify) for name in usernames]
        for f in as_completed(futures):
            result = f.result()
            if result:
                sessions.append(result)

    if len(sessions) < 2:
        print(f"  Only {len(sessions)} users logged in, need at least 2.")
        print("  Check --password (existing users keep their first password).")
        sys.exit(1)
    print(f"  Logged in: {len(sessions)}/{args.users} users")

    def total_coins() -> int | None:
        total = 0
        for s in sessions:
            info = get_info(base_url, s["token"], verify)
            if info is None:
                return None
            total += info["coins"]
        return total

    before = total_coins()
    print(f"  Total coins before: {before}")
    print()

    # --- Step 2: random transfers ---
    print(f"[2/3] Running {args.rounds} random transfers...")
    print("-" * 60)

    def do_transfer(round_idx: int) -> dict:
        sender = random.choice(sessions)
        receiver = random.choice([s for s in sessions if s["username"] != sender["username"]])
        amount = random.randint(args.min_amount, args.max_amount)
        result = send_coin(base_url, sender["token"], receiver["username"], amount, verify)
        return {
            "round": round_idx + 1,
            "from": sender["username"],
            "to": receiver["username"],
            "amount": amount,
            "ok": result["ok"],
            "detail": result["detail"],
        }

    success = 0
    failed = 0
    errors = []
    with ThreadPoolExecutor(max_workers=args.workers) as ex:
        futures = [ex.submit(do_transfer, i) for i in range(args.rounds)]
        for f in as_completed(futures):
            r = f.result()
            if r["ok"]:
                success += 1
                print(f"  ✓ #{r['round']:>4d}  {r['from']:<16s} → {r['to']:<16s}  {r['amount']:>6,}")
            else:
                failed += 1
                detail_short = str(r["detail"])[:80]
                errors.append(detail_short)
                print(f"  ✗ #{r['round']:>4d}  {r['from']:<16s} → {r['to']:<16s}  {r['amount']:>6,}  ERR: {detail_short}")

    # --- Step 3: conservation check ---
    print()
    print("[3/3] Checking that coins were conserved...")
    after = total_coins()

    print()
    print("=" * 60)
    print("  RESULTS")
    print("=" * 60)
    print(f"  Total rounds:       {args.rounds}")
    print(f"  Successful:         {success}")
    print(f"  Rejected/failed:    {failed}")
    print(f"  Total coins before: {before}")
    print(f"  Total coins after:  {after}")

    if errors:
        unique_errors = list(set(errors))
        print(f"\n  Errors ({len(unique_errors)} unique):")
        for i, e in enumerate(unique_errors[:5], 1):
            print(f"    {i}. {e}")

    print()
    if before is None or after is None or before != after:
        print("  CONSERVATION CHECK FAILED")
        sys.exit(2)
    print("  Conservation check passed")


if __name__ == "__main__":
    main()
