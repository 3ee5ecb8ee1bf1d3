"""
Subscription event dispatch.

Clients subscribe long-lived queries to an event and its arguments; when the
application triggers that event, each matching subscriber's query is re-run
against the new payload and the result is delivered to its channel.
"""

__version__ = "0.1.0"
