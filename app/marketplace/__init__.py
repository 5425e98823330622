"""
Marketplace app - the booking side of the platform.

Owns the records the escrow engine reads but never mutates through its
money paths: temples, priest profiles, cancellation policies and bookings.
"""
