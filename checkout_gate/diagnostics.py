"""
Compliance diagnostics for the most recently retrieved token set.

The relying-party certification suite drives the flow end to end and then
reads ``GET /logs`` to see how the service judged the ID token it received.
Nothing here gates a checkout; the records are informational only.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


SUCCESS = "Success"
ERROR = "Error"
SKIPPED = "Skipped"


@dataclass(frozen=True)
class TokenSetRecord:
    id_token: str
    header: Dict[str, Any]
    claims: Dict[str, Any]
    token_type: Optional[str]
    state: str
    nonce: str
    interaction_id: Optional[str] = None
    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TokenSetLog:
    """Holds the last token set retrieved by any flow in this process."""

    def __init__(self):
        self._latest: Optional[TokenSetRecord] = None

    def record(self, entry: TokenSetRecord) -> None:
        self._latest = entry
        logger.debug(
            "Token set recorded for diagnostics",
            extra={"x_fapi_interaction_id": entry.interaction_id},
        )

    def latest(self) -> Optional[TokenSetRecord]:
        return self._latest

    def clear(self) -> None:
        self._latest = None


def run_compliance_checks(
    record: TokenSetRecord,
    expected_client_id: str,
    expected_alg: str,
    expected_issuer: Optional[str] = None,
    query_state: Optional[str] = None,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Evaluate the named checks against ``record``.

    Args:
        record: Token set to inspect
        expected_client_id: Value ``aud`` must carry
        expected_alg: Algorithm the ID token must be signed with
        expected_issuer: Issuer ``iss`` must equal (issuer checks are
            skipped when not configured)
        query_state: ``state`` echoed back by the caller, if any
        now: Current epoch seconds (injectable for tests)

    Returns:
        Ordered list of ``{type, message, timestamp}`` entries
    """
    logs: List[Dict[str, Any]] = []
    timestamp = datetime.now(timezone.utc).isoformat()
    now = time.time() if now is None else now

    def add(kind: str, message: str) -> None:
        logs.append({"type": kind, "message": message, "timestamp": timestamp})

    claims = record.claims
    alg = record.header.get("alg")
    aud = claims.get("aud")
    iss = claims.get("iss")
    exp = claims.get("exp")

    add(SUCCESS, "Happy path flow completed, tokens retrieved")

    if expected_issuer is None:
        add(SKIPPED, "No expected issuer configured")
    elif iss != expected_issuer:
        add(ERROR, "`iss` value in id_token does not match expected issuer")

    if isinstance(aud, list):
        if expected_client_id not in aud:
            add(ERROR, "`aud` value in id_token does not match expected client ID")
        if len(aud) > 1 and not claims.get("azp"):
            add(ERROR, "`aud` contains multiple clients and `azp` claim is missing")
        if aud == [expected_client_id]:
            add(SUCCESS, "`aud` is an array with one valid value")
    elif aud and aud != expected_client_id:
        add(ERROR, "`aud` value in id_token does not match expected client ID")

    if alg == "none":
        add(ERROR, "`id_token` was signed with `alg: none`")
    if alg != expected_alg:
        add(ERROR, f"id_token algorithm {alg} does not match expected {expected_alg}")

    if not exp:
        add(ERROR, "`exp` value is missing in id_token")
    elif exp < now:
        add(ERROR, "`exp` value in id_token has expired")

    if not aud:
        add(ERROR, "`aud` value is missing in id_token")
    if not iss:
        add(ERROR, "`iss` value is missing in id_token")

    token_nonce = claims.get("nonce")
    if not token_nonce and record.nonce:
        add(ERROR, "`nonce` value is missing in id_token but was expected")
    elif token_nonce != record.nonce:
        add(ERROR, "`nonce` value in id_token does not match the request nonce")

    if not query_state:
        add(SKIPPED, "No `state` value provided in authorization endpoint response")
    elif query_state != record.state:
        add(ERROR, "Invalid `state` value in authorization endpoint response")

    if record.token_type != "Bearer":
        add(ERROR, "Case-sensitive mismatch in `token_type` returned from token endpoint")

    return logs


__all__ = ["TokenSetLog", "TokenSetRecord", "run_compliance_checks", "SUCCESS", "ERROR", "SKIPPED"]
