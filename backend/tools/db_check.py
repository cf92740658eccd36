import json
import sqlite3
import sys

DB = sys.argv[1] if len(sys.argv) > 1 else "dev.db"
REQUEST = sys.argv[2] if len(sys.argv) > 2 else None

conn = sqlite3.connect(DB)
cur = conn.cursor()

print("=== Return Requests ===")
if REQUEST:
    cur.execute(
        "SELECT id, request_number, sub_order_id, status, refund_amount, version, updated_at FROM return_requests WHERE id=? OR request_number=?",
        (REQUEST, REQUEST),
    )
else:
    cur.execute(
        "SELECT id, request_number, sub_order_id, status, refund_amount, version, updated_at FROM return_requests ORDER BY created_at DESC LIMIT 20"
    )
requests_rows = cur.fetchall()
for r in requests_rows:
    print(r)

if REQUEST and requests_rows:
    print(f"\n=== History for {requests_rows[0][1]} ===")
    cur.execute(
        "SELECT id, from_status, to_status, actor_type, actor_id, note, created_at FROM return_request_history WHERE return_request_id=? ORDER BY id",
        (requests_rows[0][0],),
    )
    for r in cur.fetchall():
        print(r)

print("\n=== Outbox (not delivered) ===")
cur.execute(
    "SELECT id, topic, status, attempts, last_error, payload FROM outbox_messages WHERE status != 'DELIVERED' ORDER BY id LIMIT 50"
)
for r in cur.fetchall():
    payload = r[5]
    try:
        payload = json.loads(payload) if isinstance(payload, str) else payload
    except ValueError:
        pass
    print(
        {
            "id": r[0],
            "topic": r[1],
            "status": r[2],
            "attempts": r[3],
            "last_error": r[4],
            "payload": payload,
        }
    )

conn.close()
