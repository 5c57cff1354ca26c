"""HTTP client for the DEX signing gateway (quotes, swaps, balances)."""
from __future__ import annotations

import json
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from coincurve import PrivateKey
from eth_utils import keccak

from dexbot.src.trading.decision_engine.exceptions import (
    ConfirmationTimeout,
    DecisionEngineError,
    QuoteUnavailable,
    SubmitError,
)
from dexbot.src.trading.decision_engine.models import (
    ZERO,
    AssetBalance,
    Quote,
    SwapReceipt,
    decimal_to_str,
    to_decimal,
    token_symbol,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8787"
MAX_PAGE_SIZE = 100
# (first page, page size) tried in order until one yields balances.
BALANCE_ATTEMPTS: Tuple[Tuple[int, int], ...] = ((1, 100), (1, 50), (0, 100), (0, 50))

STATUS_PROCESSED = "PROCESSED"
STATUS_FAILED = "FAILED"


class WalletSigner:
    """secp256k1 signer over keccak256 digests.

    Signatures are the 65 byte ``r || s || v`` form with ``v`` in {27, 28},
    hex encoded without a ``0x`` prefix.
    """

    def __init__(self, private_key: str) -> None:
        key_hex = private_key.strip()
        if key_hex[:2].lower() == "0x":
            key_hex = key_hex[2:]
        if len(key_hex) != 64:
            raise SubmitError("Signing key must be 32 bytes of hex")
        try:
            self._key = PrivateKey.from_hex(key_hex)
        except ValueError as exc:
            raise SubmitError(f"Invalid signing key: {exc}") from exc

    @property
    def public_key(self) -> bytes:
        return self._key.public_key.format(compressed=False)

    def sign(self, payload: bytes) -> str:
        digest = keccak(payload)
        signature = bytearray(self._key.sign_recoverable(digest, hasher=None))
        signature[64] = signature[64] % 2 + 27
        return bytes(signature).hex()


class PendingSwap:
    """Handle for a submitted swap; :meth:`wait` blocks until it is processed."""

    def __init__(
        self,
        connection: "DexConnection",
        tx_id: str,
        *,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self.tx_id = tx_id
        self.poll_interval = max(float(poll_interval), 0.0)
        self._sleep = sleep
        self._clock = clock

    def wait(self, timeout: float) -> SwapReceipt:
        deadline = self._clock() + max(float(timeout), 0.0)
        while True:
            try:
                payload = self.connection.transaction_status(self.tx_id)
            except (requests.RequestException, ValueError) as exc:
                logger.debug("Status poll for %s failed: %s", self.tx_id, exc)
                payload = {}
            if not isinstance(payload, dict):
                logger.debug("Status poll for %s returned %r", self.tx_id, payload)
                payload = {}

            status = str(payload.get("status", "")).upper()
            if status == STATUS_PROCESSED:
                return SwapReceipt(tx_id=self.tx_id, hash=payload.get("hash"))
            if status == STATUS_FAILED:
                raise SubmitError(
                    f"Transaction {self.tx_id} failed: {payload.get('error', 'no reason given')}"
                )

            if self._clock() >= deadline:
                raise ConfirmationTimeout(
                    f"Transaction {self.tx_id} not processed within {timeout:.1f}s"
                )
            self._sleep(self.poll_interval)


class DexConnection:
    """JSON-over-HTTP wrapper around the gateway that quotes and signs swaps.

    Swap submissions carry a recoverable secp256k1 signature of the keccak256
    digest of the canonical (sorted, compact) JSON body, made with the wallet's
    ``signing_key``. Quotes and balance reads are unauthenticated.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        wallet: Optional[str] = None,
        signing_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        request_timeout: float = 15.0,
        status_poll_interval: float = 1.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.wallet = wallet
        self.signing_key = signing_key
        self.request_timeout = request_timeout
        self.status_poll_interval = status_poll_interval
        self._signer: Optional[WalletSigner] = None
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.session.headers.setdefault("Content-Type", "application/json")

    def __enter__(self) -> "DexConnection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _sign(self, body: bytes) -> str:
        if not self.signing_key:
            raise SubmitError("A signing key is required to submit swaps")
        if self._signer is None:
            self._signer = WalletSigner(self.signing_key)
        return self._signer.sign(body)

    def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal | float | str,
        fee_tier: Optional[int] = None,
    ) -> Quote:
        amount = to_decimal(amount_in)
        if amount <= ZERO:
            raise QuoteUnavailable(f"Cannot quote non-positive amount {decimal_to_str(amount)}")

        payload: Dict[str, Any] = {
            "tokenIn": token_in,
            "tokenOut": token_out,
            "amountIn": decimal_to_str(amount),
        }
        if fee_tier is not None:
            payload["fee"] = fee_tier
        try:
            response = self.session.post(
                self._url("/quote"), json=payload, timeout=self.request_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise QuoteUnavailable(
                f"No quote for {token_symbol(token_in)} -> {token_symbol(token_out)}: {exc}"
            ) from exc

        raw_out = data.get("out")
        if raw_out in (None, ""):
            raise QuoteUnavailable(
                f"Quote for {token_symbol(token_in)} -> {token_symbol(token_out)} has no output"
            )
        out_amount = to_decimal(raw_out)
        if out_amount <= ZERO:
            raise QuoteUnavailable(
                f"Quote for {token_symbol(token_in)} -> {token_symbol(token_out)} returned {raw_out}"
            )
        logger.debug(
            "Quote %s %s -> %s %s (fee %s)",
            decimal_to_str(amount),
            token_symbol(token_in),
            decimal_to_str(out_amount),
            token_symbol(token_out),
            data.get("feeTier"),
        )
        return Quote(out_amount=out_amount, fee_tier=int(data.get("feeTier") or fee_tier or 0))

    def submit_swap(
        self,
        token_in: str,
        token_out: str,
        fee_tier: int,
        exact_in: str,
        min_out: str,
        wallet: str,
    ) -> PendingSwap:
        body = json.dumps(
            {
                "tokenIn": token_in,
                "tokenOut": token_out,
                "fee": fee_tier,
                "exactIn": exact_in,
                "amountOutMinimum": min_out,
                "wallet": wallet,
            },
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        headers = {"X-Wallet": wallet, "X-Signature": self._sign(body)}
        try:
            response = self.session.post(
                self._url("/swap"), data=body, headers=headers, timeout=self.request_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise SubmitError(f"Swap submission rejected: {exc}") from exc

        tx_id = data.get("txId")
        if not tx_id:
            raise SubmitError(f"Swap submission returned no transaction id: {data!r}")
        logger.info("Swap submitted as %s", tx_id)
        return PendingSwap(self, str(tx_id), poll_interval=self.status_poll_interval)

    def transaction_status(self, tx_id: str) -> Dict[str, Any]:
        response = self.session.get(
            self._url(f"/transactions/{tx_id}"), timeout=self.request_timeout
        )
        response.raise_for_status()
        return response.json()

    def fetch_assets(self, wallet: str, page: int, limit: int) -> List[AssetBalance]:
        """Return one page of wallet balances."""

        try:
            response = self.session.get(
                self._url("/assets"),
                params={"wallet": wallet, "page": page, "limit": limit},
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise DecisionEngineError(f"Balance query failed on page {page}: {exc}") from exc

        balances: List[AssetBalance] = []
        for entry in data.get("tokens") or []:
            symbol = entry.get("symbol")
            if not symbol:
                continue
            try:
                quantity = to_decimal(entry.get("quantity") or 0)
            except ValueError:
                logger.debug("Ignoring unparsable balance entry %r", entry)
                continue
            balances.append(AssetBalance(symbol=str(symbol), quantity=quantity))
        return balances

    def close(self) -> None:
        if self._owns_session:
            try:
                self.session.close()
            except Exception:
                logger.debug("Failed to close HTTP session", exc_info=True)


def fetch_balances(
    exchange: Any,
    wallet: str,
    *,
    attempts: Sequence[Tuple[int, int]] = BALANCE_ATTEMPTS,
    max_pages: int = 50,
) -> Dict[str, Decimal]:
    """Collect every balance page into ``{SYMBOL: quantity}``.

    Each ``(first_page, page_size)`` attempt paginates until a short page; an
    empty first page or a failed request ends the attempt. The next attempt
    runs only while nothing has been collected. Symbols repeated across pages
    keep the last value seen. When every attempt failed the last error is
    raised; a wallet that answered but holds nothing gives ``{}``.
    """

    balances: Dict[str, Decimal] = {}
    last_error: Optional[DecisionEngineError] = None
    answered = False
    for first_page, page_size in attempts:
        limit = max(1, min(int(page_size), MAX_PAGE_SIZE))
        for page in range(first_page, first_page + max_pages):
            try:
                entries = exchange.fetch_assets(wallet, page, limit)
            except DecisionEngineError as exc:
                logger.debug("Balance query page=%d limit=%d failed: %s", page, limit, exc)
                last_error = exc
                break
            answered = True
            if not entries and page == first_page:
                break
            for entry in entries:
                balances[entry.symbol.upper()] = entry.quantity
            if len(entries) < limit:
                break
        else:
            logger.warning("Balance pagination stopped after %d pages", max_pages)
        if balances:
            return balances

    if not answered and last_error is not None:
        raise last_error
    return balances
