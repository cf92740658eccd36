import os
import sys
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import requests
import concurrent.futures
import argparse
from collections import Counter

BASE = os.environ.get("RETURNS_BASE", "http://127.0.0.1:8000")


def create_task(i, customer_id, sub_order_id):
    payload = {"subOrderId": sub_order_id, "reason": "change_mind"}
    headers = {"X-Customer-Id": customer_id}
    try:
        r = requests.post(f"{BASE}/api/returns", json=payload, headers=headers, timeout=10)
        return (i, "create", r.status_code, r.text)
    except requests.RequestException as e:
        return (i, "create", "ERR", str(e))


def approve_task(i, shop_id, request_id):
    headers = {"X-Shop-Id": shop_id}
    try:
        r = requests.post(
            f"{BASE}/api/partner/returns/{request_id}/approve", json={}, headers=headers, timeout=10
        )
        return (i, "approve", r.status_code, r.text)
    except requests.RequestException as e:
        return (i, "approve", "ERR", str(e))


def cancel_task(i, customer_id, request_id):
    headers = {"X-Customer-Id": customer_id}
    try:
        r = requests.post(
            f"{BASE}/api/returns/{request_id}/cancel", json={}, headers=headers, timeout=10
        )
        return (i, "cancel", r.status_code, r.text)
    except requests.RequestException as e:
        return (i, "cancel", "ERR", str(e))


def _summarize(results):
    for r in results:
        print(r[:3], r[3][:160])
    print("Status codes:", Counter((r[1], r[2]) for r in results))


def run_create_race(workers, customer_id, sub_order_id):
    """Many creates for one sub-order: exactly one 201 is expected, the rest 409/400."""
    print(f"Running create race: workers={workers}, sub_order={sub_order_id}")
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
        futures = [ex.submit(create_task, i, customer_id, sub_order_id) for i in range(workers)]
        _summarize([f.result() for f in futures])


def run_decision_race(workers, customer_id, shop_id, request_id):
    """Shop approvals racing customer cancels on one pending request: one winner."""
    print(f"Running decision race: workers={workers}, request={request_id}")
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
        futures = []
        for i in range(workers):
            if i % 2:
                futures.append(ex.submit(cancel_task, i, customer_id, request_id))
            else:
                futures.append(ex.submit(approve_task, i, shop_id, request_id))
        _summarize([f.result() for f in futures])


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrency test tool for return requests.")
    sub = parser.add_subparsers(dest="mode", required=True)

    c = sub.add_parser("create")
    c.add_argument("--customer", required=True)
    c.add_argument("--sub-order", required=True)
    c.add_argument("--workers", type=int, default=8)

    d = sub.add_parser("decide")
    d.add_argument("--customer", required=True)
    d.add_argument("--shop", required=True)
    d.add_argument("--request", required=True)
    d.add_argument("--workers", type=int, default=8)

    args = parser.parse_args()

    if args.mode == "create":
        run_create_race(args.workers, args.customer, args.sub_order)
    elif args.mode == "decide":
        run_decision_race(args.workers, args.customer, args.shop, args.request)
