"""Request context management for observability.

Context variables carry correlation fields across async boundaries so that
every structured log line can be tied to a request and a checkout session.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Checkout session reference currently being handled (webhook / verify / reaper)
session_ref_var: ContextVar[str] = ContextVar("session_ref", default="")

# User produced or resolved by provisioning
user_id_var: ContextVar[str] = ContextVar("user_id", default="")
