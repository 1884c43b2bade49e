import json

from fastapi.testclient import TestClient

import main


def run_demo() -> None:
    client = TestClient(main.app)

    create_payload = {
        "source": "ocr",
        "title": "Smoke Demo",
        "parsed": {
            "place": "Corner Bistro",
            "items": [
                {"label": "Margherita Pizza", "price": 18.00, "emoji": "🍕"},
                {"label": "Caesar Salad", "price": 12.00, "emoji": "🥗"},
                {"label": "Lemonade", "price": 8.00, "quantity": 2},
            ],
            "tax": 3.04,
            "tip": 7.60,
        },
        "people": [{"name": "Alice"}, {"name": "Bob"}, {"name": "Cara"}],
        "tip_split_method": "even",
    }
    create_resp = client.post("/bills", json=create_payload)
    create_resp.raise_for_status()
    bill = create_resp.json()
    bill_id = bill["id"]
    items = bill["items"]
    alice, bob, cara = (p["id"] for p in bill["people"])

    client.post(
        f"/bills/{bill_id}/assign",
        json={
            "assignments": {
                alice: [items[0]["id"], items[2]["id"]],
                bob: [items[1]["id"], items[2]["id"]],
                cara: [items[0]["id"]],
            }
        },
    ).raise_for_status()

    summary_resp = client.get(f"/bills/{bill_id}/totals?format=compact")
    summary_resp.raise_for_status()
    summary = summary_resp.json()

    print("=== Smoke Demo OK ===")
    print("Bill ID:", bill_id)
    print("Items:", len(items))
    print("Compact summary:")
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    run_demo()
