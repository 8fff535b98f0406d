#!/usr/bin/env python3
"""
Live demo: a customer and two mechanics take a brake job from posting to completion.

Dana:  the customer (2014 Civic, squeaky front brakes)
Alex:  mechanic, bids $150
Riley: mechanic, bids $100

Showcases:
  1. Posting a job and the bidding window
  2. Competing bids with the lowest one highlighted
  3. Explicit acceptance (Dana picks Alex over the cheaper bid)
  4. Escrow deposit split, authorization and capture
  5. Scheduling and starting work
  6. A change order, approved mid-job
  7. Completion and the final cost breakdown

Run:
  1. Start the API:  uvicorn repairhub.main:app --port 8080
  2. Run this demo:  python scripts/demo_lifecycle.py [base_url]
"""

import hashlib
import hmac
import json
import os
import sys
import uuid
from datetime import UTC, datetime, timedelta

import httpx

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"
# Must match the API's PAYMENT_CALLBACK_SECRET
PAYMENT_CALLBACK_SECRET = os.environ.get("PAYMENT_CALLBACK_SECRET", "dev-payment-callback-secret")

# ─── Colors ───

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[92m"
BLUE = "\033[94m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
MAGENTA = "\033[95m"
RESET = "\033[0m"


def banner(text: str) -> None:
    print(f"\n{'═' * 64}")
    print(f"  {BOLD}{text}{RESET}")
    print(f"{'═' * 64}")


def step(num: int, text: str) -> None:
    print(f"\n{BOLD}{CYAN}Step {num:2d}{RESET} │ {text}")


def says(name: str, color: str, msg: str) -> None:
    print(f"         {color}{BOLD}{name}{RESET}: {msg}")


def platform_says(msg: str) -> None:
    print(f"         {MAGENTA}⚙ Platform{RESET}: {msg}")


def show_json(data: dict, keys: list[str] | None = None, indent: int = 9) -> None:
    filtered = {k: data[k] for k in keys if k in data} if keys else data
    prefix = " " * indent
    for line in json.dumps(filtered, indent=2, default=str).split("\n"):
        print(f"{prefix}{DIM}{line}{RESET}")


def fail(msg: str) -> None:
    print(f"\n{RED}{BOLD}✖ FAILED: {msg}{RESET}")
    sys.exit(1)


def expect(resp: httpx.Response, status: int, context: str) -> dict:
    if resp.status_code != status:
        fail(f"{context}: expected {status}, got {resp.status_code}: {resp.text}")
    body = resp.json()
    if not body.get("success"):
        fail(f"{context}: {body.get('error')}")
    return body["data"]


class Party:
    """A marketplace user. Identity travels in the X-Actor-Id header."""

    def __init__(self, name: str, color: str) -> None:
        self.name = name
        self.color = color
        self.user_id = uuid.uuid4()
        self.http = httpx.Client(
            base_url=BASE_URL,
            timeout=30.0,
            headers={"X-Actor-Id": str(self.user_id)},
        )

    def post(self, path: str, data: dict | None = None) -> httpx.Response:
        return self.http.post(path, json=data)

    def get(self, path: str) -> httpx.Response:
        return self.http.get(path)


def payments_backend_post(path: str, data: dict) -> httpx.Response:
    """Post a settlement callback signed the way the payments backend signs it."""
    body = json.dumps(data)
    timestamp = datetime.now(UTC).isoformat()
    signature = hmac.new(
        PAYMENT_CALLBACK_SECRET.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256
    ).hexdigest()
    return httpx.post(
        f"{BASE_URL}{path}",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Payment-Timestamp": timestamp,
            "X-Payment-Signature": signature,
        },
        timeout=30.0,
    )


def main() -> None:
    dana = Party("Dana", YELLOW)
    alex = Party("Alex", BLUE)
    riley = Party("Riley", GREEN)

    health = httpx.get(f"{BASE_URL}/health", timeout=5.0)
    if health.status_code != 200:
        fail(f"API not reachable at {BASE_URL}")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 1: Posting and Bidding")
    # ═══════════════════════════════════════════════════════════════

    step(1, "Dana posts a brake job")
    job = expect(dana.post("/jobs", {
        "category": "brakes",
        "title": "Front brakes squeal when stopping",
        "vehicle": "2014 Honda Civic",
        "location": "Driveway, 14 Elm St",
        "estimated_cost": "180.00",
    }), 201, "Create job")
    job_id = job["job_id"]
    says("Dana", dana.color, f"Posted job {job_id[:8]}… estimate ${job['estimated_cost']}")

    expiry = expect(dana.get(f"/jobs/{job_id}/expiry"), 200, "Expiry")
    platform_says(f"Bidding closes at {expiry['expires_at']} ({expiry['remaining_seconds'] // 3600}h left)")

    step(2, "Two mechanics bid")
    alex_bid = expect(alex.post(f"/jobs/{job_id}/bids", {
        "amount": "150.00",
        "mechanic_name": "Alex",
        "message": "OEM pads and a rotor inspection",
        "estimated_duration_minutes": 90,
    }), 201, "Alex bid")
    says("Alex", alex.color, f"${alex_bid['amount']}: {alex_bid['message']}")
    riley_bid = expect(riley.post(f"/jobs/{job_id}/bids", {
        "amount": "100.00",
        "mechanic_name": "Riley",
        "message": "Budget pads",
        "estimated_duration_minutes": 60,
    }), 201, "Riley bid")
    says("Riley", riley.color, f"${riley_bid['amount']}: {riley_bid['message']}")

    listing = expect(dana.get(f"/jobs/{job_id}/bids"), 200, "List bids")
    lowest = next(b for b in listing["bids"] if b["bid_id"] == listing["lowest_pending_bid_id"])
    platform_says(f"Lowest pending bid: {lowest['mechanic_name']} at ${lowest['amount']} (a hint, not a choice)")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 2: Acceptance and Escrow")
    # ═══════════════════════════════════════════════════════════════

    step(3, "Dana accepts Alex's bid")
    accepted = expect(dana.post(f"/jobs/{job_id}/bids/{alex_bid['bid_id']}/accept"), 200, "Accept bid")
    says("Dana", dana.color, f"Going with {accepted['mechanic_name']} at ${accepted['amount']}")
    resp = dana.post(f"/jobs/{job_id}/bids/{riley_bid['bid_id']}/accept")
    platform_says(f"Second acceptance refused: {resp.json()['error']['code']}")

    step(4, "Deposit authorized and captured")
    txn = expect(dana.post(f"/jobs/{job_id}/escrow/authorize", {"bid_id": alex_bid["bid_id"]}), 200, "Authorize")
    show_json(txn, ["attempt", "deposit_amount", "final_balance", "status", "payment_intent_id"])
    captured = expect(payments_backend_post(f"/jobs/{job_id}/escrow/capture", {
        "payment_intent_id": txn["payment_intent_id"],
    }), 200, "Capture")
    platform_says(f"Deposit of ${captured['deposit_amount']} is {captured['status']}")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 3: The Work")
    # ═══════════════════════════════════════════════════════════════

    step(5, "Appointment confirmed and work starts")
    when = (datetime.now(UTC) + timedelta(days=1)).replace(minute=0, second=0, microsecond=0)
    expect(dana.post(f"/jobs/{job_id}/schedule/confirm", {
        "scheduled_for": when.isoformat(),
        "notes": "Gate code 4412",
    }), 200, "Schedule")
    says("Dana", dana.color, f"See you {when:%a %d %b at %H:%M} UTC")
    expect(alex.post(f"/jobs/{job_id}/start"), 200, "Start work")
    says("Alex", alex.color, "On site, wheels off")

    step(6, "Alex finds scored rotors and raises a change order")
    change_order = expect(alex.post(f"/jobs/{job_id}/change-orders", {
        "title": "Replace front rotors",
        "reason": "Rotors scored below minimum thickness",
        "line_items": [
            {"description": "Front rotor", "quantity": 2, "unit_price": "30.00"},
            {"description": "Labour", "quantity": 1, "unit_price": "20.00"},
        ],
    }), 201, "Change order")
    says("Alex", alex.color, f"{change_order['title']}: +${change_order['total_amount']}")
    expect(dana.post(f"/jobs/{job_id}/change-orders/{change_order['change_order_id']}/approve"), 200, "Approve")
    says("Dana", dana.color, "Approved")

    step(7, "Job completed")
    expect(alex.post(f"/jobs/{job_id}/complete", {"notes": "Pads and rotors replaced, test drive OK"}), 200, "Complete")
    costs = expect(dana.get(f"/jobs/{job_id}/costs"), 200, "Costs")
    show_json(costs)

    final = expect(dana.get(f"/jobs/{job_id}"), 200, "Get job")
    print(f"\n         {DIM}Timeline:{RESET}")
    for entry in final["timeline"]:
        print(f"         {DIM}{entry['sequence']:2d}. [{entry['status']}] {entry['description']}{RESET}")

    # ═══════════════════════════════════════════════════════════════
    banner("Demo Complete")
    # ═══════════════════════════════════════════════════════════════

    print(f"""
  {BOLD}{GREEN}One repair job, start to finish:{RESET}

    {CYAN}1.{RESET} Posted with a 24h bidding window
    {CYAN}2.{RESET} Two competing bids; the cheapest was highlighted, not auto-picked
    {CYAN}3.{RESET} Exactly one bid accepted, the other rejected
    {CYAN}4.{RESET} ${captured['deposit_amount']} deposit captured, ${captured['final_balance']} due on completion
    {CYAN}5.{RESET} Mid-job change order approved (+${change_order['total_amount']})
    {CYAN}6.{RESET} Final total ${costs['total_cost']}, balance due ${costs['balance_due']}
""")


if __name__ == "__main__":
    main()
