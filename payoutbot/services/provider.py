from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from ..schemas.provider import (
    AccountCheck,
    ConnectionStatus,
    PayoutChannel,
    ProviderEnvelope,
    ProviderErrorKind,
    ProviderFailure,
    ProviderResult,
    ProviderSuccess,
    TransferData,
)

logger = logging.getLogger(__name__)

BANK_LIST_ENDPOINT = "/transfer/bank_list"
CHECK_ACCOUNT_ENDPOINT = "/transfer/cek_rekening"
CREATE_TRANSFER_ENDPOINT = "/transfer/create"
TRANSFER_STATUS_ENDPOINT = "/transfer/status"

ERROR_MESSAGES: dict[ProviderErrorKind, str] = {
    ProviderErrorKind.UNAUTHORIZED: "Invalid provider API key.",
    ProviderErrorKind.FORBIDDEN: "Access to the provider was denied.",
    ProviderErrorKind.NOT_FOUND: "Provider endpoint not found.",
    ProviderErrorKind.RATE_LIMITED: "Too many requests to the provider, try again later.",
    ProviderErrorKind.SERVER_ERROR: "Provider server error, try again later.",
    ProviderErrorKind.TIMEOUT: "The provider did not answer in time.",
    ProviderErrorKind.CONNECTION_RESET: "The connection to the provider was interrupted.",
    ProviderErrorKind.UNKNOWN: "Unexpected error while talking to the provider.",
}

RETRYABLE_KINDS = frozenset(
    {
        ProviderErrorKind.RATE_LIMITED,
        ProviderErrorKind.SERVER_ERROR,
        ProviderErrorKind.TIMEOUT,
        ProviderErrorKind.CONNECTION_RESET,
    }
)

RequestObserver = Callable[[str, bool], None]
Sleeper = Callable[[float], Awaitable[None]]


class MalformedResponseError(ValueError):
    """Raised when the provider answers with something that is not a valid envelope."""


class InvalidRequestError(ValueError):
    """Raised before any request is sent when required call fields are missing."""


def classify_error(error: BaseException) -> ProviderErrorKind:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 401:
            return ProviderErrorKind.UNAUTHORIZED
        if status == 403:
            return ProviderErrorKind.FORBIDDEN
        if status == 404:
            return ProviderErrorKind.NOT_FOUND
        if status == 429:
            return ProviderErrorKind.RATE_LIMITED
        if status >= 500:
            return ProviderErrorKind.SERVER_ERROR
        return ProviderErrorKind.UNKNOWN
    if isinstance(error, httpx.TimeoutException):
        return ProviderErrorKind.TIMEOUT
    if isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return ProviderErrorKind.CONNECTION_RESET
    return ProviderErrorKind.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    return classify_error(error) in RETRYABLE_KINDS


def get_error_message(error: BaseException | ProviderErrorKind) -> str:
    """Single place that turns a transport or provider failure into user-facing text."""
    if isinstance(error, ProviderErrorKind):
        return ERROR_MESSAGES[error]
    if isinstance(error, (InvalidRequestError, MalformedResponseError)):
        return str(error)
    kind = classify_error(error)
    if kind is ProviderErrorKind.UNKNOWN and isinstance(error, httpx.HTTPStatusError):
        detail = _response_message(error.response)
        status = error.response.status_code
        return f"{detail} (HTTP {status})" if detail else f"{ERROR_MESSAGES[kind]} (HTTP {status})"
    return ERROR_MESSAGES[kind]


def _response_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, Mapping):
        message = body.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


class PaymentApiClient:
    """HTTP client for the payout provider with retry, backoff and response normalisation."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://atlantich2h.com",
        *,
        max_retries: int = 3,
        timeout: float = 30.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleeper = asyncio.sleep,
        observer: RequestObserver | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = str(base_url).rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.observer = observer
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout=timeout, connect=min(timeout, 10.0)),
            headers={"User-Agent": "PayoutBot/1.0"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2**attempt), self.backoff_cap)

    async def _post_once(self, endpoint: str, fields: Mapping[str, Any]) -> ProviderEnvelope:
        form = {"api_key": self.api_key}
        form.update({key: str(value) for key, value in fields.items() if value is not None})
        response = await self.client.post(endpoint, data=form)
        response.raise_for_status()
        try:
            return ProviderEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise MalformedResponseError("The provider returned an unreadable response.") from exc

    async def _post(self, endpoint: str, fields: Mapping[str, Any]) -> ProviderEnvelope:
        attempt = 0
        while True:
            started = time.monotonic()
            try:
                envelope = await self._post_once(endpoint, fields)
            except Exception as exc:
                duration_ms = (time.monotonic() - started) * 1000
                kind = classify_error(exc)
                logger.warning(
                    "Provider call %s failed after %.0fms (%s)",
                    endpoint,
                    duration_ms,
                    kind.value,
                    extra={
                        "endpoint": endpoint,
                        "duration_ms": round(duration_ms),
                        "outcome": kind.value,
                        "attempt": attempt + 1,
                    },
                )
                if not is_retryable(exc) or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Retrying %s (attempt %d/%d) in %.1fs",
                    endpoint,
                    attempt,
                    self.max_retries,
                    delay,
                    extra={"endpoint": endpoint, "attempt": attempt, "delay": delay},
                )
                await self._sleep(delay)
                continue
            duration_ms = (time.monotonic() - started) * 1000
            logger.info(
                "Provider call %s finished in %.0fms (status=%s)",
                endpoint,
                duration_ms,
                envelope.status,
                extra={
                    "endpoint": endpoint,
                    "duration_ms": round(duration_ms),
                    "outcome": "ok" if envelope.status else "rejected",
                    "attempt": attempt + 1,
                },
            )
            return envelope

    async def _call(
        self,
        endpoint: str,
        fields: Mapping[str, Any],
        *,
        parse: Callable[[Any], Any],
        default_failure: str,
    ) -> ProviderResult:
        try:
            envelope = await self._post(endpoint, fields)
        except Exception as exc:
            if not isinstance(exc, (httpx.HTTPError, MalformedResponseError)):
                logger.exception("Unexpected error calling %s", endpoint)
            self._notify(endpoint, False)
            return ProviderFailure(message=get_error_message(exc), error=classify_error(exc))

        if not envelope.status:
            self._notify(endpoint, False)
            return ProviderFailure(message=envelope.message or default_failure)

        try:
            data = parse(envelope.data)
        except (ValueError, TypeError, ValidationError):
            logger.warning("Provider payload for %s did not match the expected shape", endpoint)
            self._notify(endpoint, False)
            return ProviderFailure(message="The provider returned an unreadable response.")
        self._notify(endpoint, True)
        return ProviderSuccess(data=data, message=envelope.message or "Success")

    def _notify(self, endpoint: str, ok: bool) -> None:
        if self.observer is None:
            return
        try:
            self.observer(endpoint, ok)
        except Exception:
            logger.exception("Request observer failed for %s", endpoint)

    async def list_channels(self) -> ProviderResult:
        return await self._call(
            BANK_LIST_ENDPOINT,
            {},
            parse=lambda data: [PayoutChannel.model_validate(item) for item in (data or [])],
            default_failure="Failed to load the bank list.",
        )

    async def check_account(self, bank_code: str, account_number: str) -> ProviderResult:
        return await self._call(
            CHECK_ACCOUNT_ENDPOINT,
            {"bank_code": bank_code, "account_number": account_number},
            parse=lambda data: AccountCheck.model_validate(data or {}),
            default_failure="Account check failed.",
        )

    async def create_transfer(self, fields: Mapping[str, Any]) -> ProviderResult:
        missing = [
            name for name in ("bank_code", "account_number", "amount") if not fields.get(name)
        ]
        if missing:
            error = InvalidRequestError(f"Missing transfer data: {', '.join(missing)}.")
            return ProviderFailure(message=get_error_message(error))
        reference_id = fields.get("reference_id") or f"TRF-{int(time.time() * 1000)}"
        payload = {
            "ref_id": reference_id,
            "kode_bank": fields["bank_code"],
            "nomor_akun": fields["account_number"],
            "nama_pemilik": fields.get("account_name") or "",
            "nominal": fields["amount"],
            "email": fields.get("email") or "",
            "phone": fields.get("phone") or "",
            "note": fields.get("note") or "",
        }
        result = await self._call(
            CREATE_TRANSFER_ENDPOINT,
            payload,
            parse=lambda data: TransferData.model_validate(data or {}),
            default_failure="Transfer creation failed.",
        )
        if result.success:
            logger.info(
                "Transfer %s created for %s/%s",
                reference_id,
                fields["bank_code"],
                fields["account_number"],
                extra={"reference_id": reference_id, "transfer_id": result.data.id},
            )
        return result

    async def check_status(self, transaction_id: str) -> ProviderResult:
        return await self._call(
            TRANSFER_STATUS_ENDPOINT,
            {"id": transaction_id},
            parse=lambda data: TransferData.model_validate(data or {}),
            default_failure="Could not fetch the transfer status.",
        )

    async def test_connection(self) -> ConnectionStatus:
        result = await self.list_channels()
        if result.success:
            channels = result.data
            logger.info("Provider connection OK, %d channels available", len(channels))
            return ConnectionStatus(
                connected=True,
                message=f"Connected. {len(channels)} banks/e-wallets available.",
                channels=channels[:5],
            )
        logger.error("Provider connection test failed: %s", result.message)
        return ConnectionStatus(connected=False, message=result.message)
