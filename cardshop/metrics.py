"""
Prometheus metrics: admin logins, order status writes, notification sends, mobile verification.
"""
from prometheus_client import Counter, generate_latest

admin_logins_total = Counter(
    "admin_logins_total",
    "Admin PIN login attempts",
    ["result"],
)

order_status_updates_total = Counter(
    "order_status_updates_total",
    "Order status writes that were committed",
    ["status"],
)

notifications_sent_total = Counter(
    "notifications_sent_total",
    "Order notification dispatch attempts (each resend counts)",
    ["kind", "outcome"],
)

otp_requests_total = Counter(
    "otp_requests_total",
    "Mobile verification codes requested",
    ["outcome"],
)
otp_verifications_total = Counter(
    "otp_verifications_total",
    "Mobile verification attempts by result (verified, invalid, expired, locked, bypassed)",
    ["result"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
