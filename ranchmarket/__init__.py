"""
ranchmarket package

Order/listing lifecycle engine for a regulated-livestock marketplace: payment
webhook ingestion, dispute resolution, auction relisting, reservation sweeps,
and the notification event pipeline. Everything persists in Firestore.
"""

__version__ = "0.4.0"
