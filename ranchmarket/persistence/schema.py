from __future__ import annotations

"""
Firestore collection naming for the marketplace lifecycle engine.

Layout:
- orders/{order_id}
- listings/{listing_id}
- listings/{listing_id}/purchase_reservations/{order_id}
- auction_results/{listing_id}
- events/{dedupe_doc_id}
- notification_dead_letters/{event_id}
- users/{uid}
- users/{uid}/watchlist/{listing_id}
- users/{uid}/notifications/{event_id}
- ops_health/{job_name}
"""

COLLECTION_ORDERS = "orders"
COLLECTION_LISTINGS = "listings"
COLLECTION_PURCHASE_RESERVATIONS = "purchase_reservations"
COLLECTION_AUCTION_RESULTS = "auction_results"
COLLECTION_EVENTS = "events"
COLLECTION_DEAD_LETTERS = "notification_dead_letters"
COLLECTION_USERS = "users"
COLLECTION_WATCHLIST = "watchlist"
COLLECTION_USER_NOTIFICATIONS = "notifications"
COLLECTION_OPS_HEALTH = "ops_health"
