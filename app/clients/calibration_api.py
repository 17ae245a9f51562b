"""
Calibra — Calibration API client.

Thin async ``httpx`` wrapper used by operator tooling to drive the closing
protocol against a running server.  The close call is never retried: a
rejected close surfaces the server's reason, and a timeout surfaces as an
"outcome unknown" error so the operator re-queries the session status
instead of assuming success.
"""

from __future__ import annotations

import uuid
from typing import Any

import httpx
import structlog

from app.services.closing_protocol import ClosingProtocol
from app.services.distribution_service import BUCKET_LABELS, DistributionEvidence
from app.services.financial_impact_service import FinancialImpact

logger = structlog.get_logger("calibra.clients.calibration_api")

SESSIONS_PATH = "/calibration/sessions"


class ApiError(Exception):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str) -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP {status_code}: {reason}")


class CloseRejectedError(ApiError):
    """The close was refused; nothing was applied."""


class CloseOutcomeUnknownError(Exception):
    """The close request was sent but no answer arrived.

    The session may or may not be closed.  Query its status before acting.
    """

    def __init__(self, session_id: uuid.UUID, cause: Exception) -> None:
        self.session_id = session_id
        super().__init__(
            f"Close of session {session_id} did not complete ({cause.__class__.__name__}); "
            "re-query the session status"
        )


class CalibrationTimeout(Exception):
    """The server answered 504 to a close."""


def _reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        reason = body.get("error") or body.get("detail") or response.reason_phrase
        details = body.get("details")
        if details:
            reason = f"{reason}: {'; '.join(str(d) for d in details)}"
        return str(reason)
    return response.reason_phrase


class CalibrationApiClient:
    """Client for the ``/calibration/sessions`` endpoints.

    Parameters
    ----------
    base_url:
        API root, e.g. ``http://localhost:8000/api/v1``.
    account_id, user_email, user_role:
        Caller identity, sent as the gateway headers.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport (tests pass a ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        account_id: uuid.UUID | str,
        user_email: str,
        user_role: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "x-account-id": str(account_id),
                "x-user-email": user_email,
                "x-user-role": user_role,
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "CalibrationApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict | None = None) -> Any:
        response = await self._client.get(path, params=params)
        if response.is_error:
            raise ApiError(response.status_code, _reason(response))
        return response.json()

    # ── Queries ─────────────────────────────────────────────────────────

    async def list_sessions(self, status: str | None = None) -> list[dict]:
        params = {"status": status} if status else None
        body = await self._get(SESSIONS_PATH, params=params)
        return body["sessions"]

    async def get_session(self, session_id: uuid.UUID) -> dict:
        return await self._get(f"{SESSIONS_PATH}/{session_id}")

    async def get_closing_evidence(self, session_id: uuid.UUID) -> dict:
        return await self._get(f"{SESSIONS_PATH}/{session_id}/closing-evidence")

    async def start_protocol(self, session_id: uuid.UUID) -> ClosingProtocol:
        """Fetch the evidence and open a protocol in the evidence phase."""
        evidence = await self.get_closing_evidence(session_id)
        dist = evidence["distribution"]
        fin = evidence["financial"]
        return ClosingProtocol(
            session_id=uuid.UUID(str(evidence["session_id"])),
            distribution=DistributionEvidence(
                original=list(dist["original"]),
                calibrated=list(dist["calibrated"]),
                population=dist["population"],
                labels=tuple(dist.get("labels") or BUCKET_LABELS),
            ),
            financial=FinancialImpact(
                original_bonus_factor=fin["original_bonus_factor"],
                calibrated_bonus_factor=fin["calibrated_bonus_factor"],
                delta=fin["delta"],
                delta_pct=fin["delta_pct"],
                threshold_pct=fin["threshold_pct"],
                requires_cfo_warning=fin["requires_cfo_warning"],
            ),
            confirmation_literal=evidence["confirmation_literal"],
        )

    # ── Commit ──────────────────────────────────────────────────────────

    async def close_session(
        self,
        session_id: uuid.UUID,
        budget_authorized: bool,
        confirmation_text: str,
    ) -> dict:
        """Send the close exactly once.

        Raises
        ------
        CloseRejectedError
            Non-2xx answer; ``reason`` carries the server message.
        CloseOutcomeUnknownError
            Timeout (client side, or a 504 from the server) or a connection
            dropped after the request was sent.
        httpx.ConnectError, httpx.ConnectTimeout
            The connection was never established; nothing was sent.
        """
        log = logger.bind(session_id=str(session_id))
        log.info("close_request_sent")
        try:
            response = await self._client.post(
                f"{SESSIONS_PATH}/{session_id}/close",
                json={
                    "budget_authorized": budget_authorized,
                    "confirmation_text": confirmation_text,
                },
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            # Never reached the server.
            log.warning("close_request_not_sent", error=str(exc))
            raise
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            log.error("close_outcome_unknown", error=str(exc))
            raise CloseOutcomeUnknownError(session_id, exc) from exc

        if response.status_code == httpx.codes.GATEWAY_TIMEOUT:
            # The server gave up waiting; the transaction may have committed.
            log.error("close_outcome_unknown", status=response.status_code)
            raise CloseOutcomeUnknownError(session_id, CalibrationTimeout(_reason(response)))

        if response.is_error:
            reason = _reason(response)
            log.warning("close_rejected", status=response.status_code, reason=reason)
            raise CloseRejectedError(response.status_code, reason)

        body = response.json()
        log.info("close_confirmed", adjustments_applied=body.get("adjustments_applied"))
        return body
