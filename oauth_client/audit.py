"""
Audit logging for the token lifecycle. Security-relevant events only; no tokens, codes, secrets or nonces.
Records go to the "oauth_client.audit" logger so deployments can route them separately.
"""
import logging

audit_logger = logging.getLogger("oauth_client.audit")

EVENT_LOGIN_STARTED = "login_started"
EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_STATE_MISMATCH = "state_mismatch"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_REFRESH_FAIL = "refresh_fail"
EVENT_LOGOUT = "logout"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def log_audit(event_type: str, *, outcome: str = OUTCOME_SUCCESS, **fields) -> None:
    """Emit one audit record. Callers pass identifiers and reasons, never credentials."""
    level = logging.INFO if outcome == OUTCOME_SUCCESS else logging.WARNING
    extra = " ".join(f"{k}={v}" for k, v in sorted(fields.items()) if v is not None)
    audit_logger.log(
        level,
        "audit event=%s outcome=%s%s",
        event_type,
        outcome,
        f" {extra}" if extra else "",
        extra={"event_type": event_type, "outcome": outcome},
    )
