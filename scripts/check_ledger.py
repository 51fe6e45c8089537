#!/usr/bin/env python3
"""
Scan every case for ledger inconsistencies.

Read-only. Exits 1 if any case's stored state disagrees with its history.
"""

import argparse
import json


def main() -> int:
    parser = argparse.ArgumentParser(description="Check case states against the transition ledger.")
    parser.add_argument("--json", action="store_true", help="Print findings as JSON")
    args = parser.parse_args()

    from lawman.db.session import session_scope, init_db
    from lawman.ledger import find_inconsistent_cases

    init_db()

    with session_scope() as db:
        problems = [p.to_dict() for p in find_inconsistent_cases(db)]

    if args.json:
        print(json.dumps({"ok": not problems, "inconsistent": problems}, indent=2))
    elif not problems:
        print("Ledger OK")
    else:
        for p in problems:
            print(f"{p['case_id']}: {p['reason']} (state={p['state']}, ledger={p['ledger_state']})")
        print(f"{len(problems)} inconsistent case(s)")

    return 1 if problems else 0


if __name__ == "__main__":
    raise SystemExit(main())
