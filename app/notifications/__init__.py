"""
Notifications app.

Stores every notification the payment engine sends and hands delivery to a
Celery task. Delivery is fire-and-forget: callers get a bool, never an
exception.
"""
