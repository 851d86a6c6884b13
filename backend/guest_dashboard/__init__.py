"""
guest_dashboard - guest dashboard orchestration runtime

Geofencing, reservations, inventory and the state authority that turns
location signals and guest intents into one consistent snapshot.
"""

__version__ = "0.1.0"
