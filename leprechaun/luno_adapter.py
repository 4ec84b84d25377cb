import random
import time
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exchange import (
    AuthorizationError,
    Balance,
    ExchangeError,
    ExchangeGateway,
    FeeInfo,
    InsufficientFundsError,
    MalformedRequestError,
    MarketOrderRequest,
    OrderDetails,
    RateLimitError,
    Ticker,
    TransientError,
)
from .logging_setup import logger
from .models import OrderSide
from .rate_limit_policy import RateLimitManager, RequestPacer
from .secrets import LunoCredentials

AUTH_ERROR_CODES = frozenset(["ErrAPIKeyNotFound", "ErrAPIKeyRevoked", "ErrUnauthorised", "ErrInvalidAPIKey"])
FUNDS_ERROR_CODES = frozenset(["ErrInsufficientBalance", "ErrInsufficientFunds"])

_SIDES = {"BUY": OrderSide.BUY, "BID": OrderSide.BUY, "SELL": OrderSide.SELL, "ASK": OrderSide.SELL}


def _dec(value, default: str = "0") -> Decimal:
    if value in (None, ""):
        return Decimal(default)
    return Decimal(str(value))


def _ms_to_str(ms) -> Optional[str]:
    if not ms:
        return None
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(int(ms) / 1000))


class LunoAdapter(ExchangeGateway):
    """Luno REST adapter with HTTP basic auth, request pacing, retries and rate-limit backoff.

    Features:
    - Every call waits for the pacer first, so consecutive calls are at least
      ``request_delay`` seconds apart (trade history uses ``history_request_delay``).
    - Idempotent GETs are retried by urllib3 on 5xx; order placement never is.
    - 429 responses are retried with jittered exponential backoff, then surface
      as ``RateLimitError``. Waits go through ``sleep``, so a session can pass a
      cancellable one.
    - Failures are classified into the gateway error types (see ``exchange``).
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        base_url: str = "https://api.luno.com",
        timeout: int = 10,
        max_retries: int = 3,
        max_backoff_seconds: float = 60.0,
        request_delay: float = 0.6,
        history_request_delay: float = 0.7,
        rate_limits: Optional[RateLimitManager] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_backoff_seconds = max_backoff_seconds
        self.history_request_delay = history_request_delay
        self._sleep = sleep or time.sleep
        self.pacer = RequestPacer(request_delay, sleep=self._sleep)
        self.rate_limits = rate_limits or RateLimitManager()

        self.session = requests.Session()
        self.session.auth = (key_id, key_secret)
        retries = Retry(total=max_retries, backoff_factor=0.5, status_forcelist=(500, 502, 503, 504), allowed_methods=frozenset(["GET"]))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_credentials(cls, credentials: LunoCredentials, **kwargs) -> "LunoAdapter":
        return cls(key_id=credentials.key_id, key_secret=credentials.key_secret, **kwargs)

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Exponential backoff capped at ``max_backoff`` with ±25% jitter."""
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _classify(resp: requests.Response) -> ExchangeError:
        code = ""
        message = resp.text
        try:
            payload = resp.json()
            code = payload.get("error_code", "") or ""
            message = payload.get("error", message) or message
        except ValueError:
            pass
        detail = f"{resp.status_code} {code}: {message}".strip()
        if code in AUTH_ERROR_CODES or resp.status_code in (401, 403):
            return AuthorizationError(detail)
        if code in FUNDS_ERROR_CODES:
            return InsufficientFundsError(detail)
        if resp.status_code >= 500:
            return TransientError(detail)
        return MalformedRequestError(detail)

    def _request(self, method: str, path: str, params=None, *, pace: Optional[float] = None, attempt: int = 0):
        self.pacer.pace(pace)
        self.rate_limits.wait_if_needed(path, max_wait=self.max_backoff_seconds)
        url = f"{self.base_url}{path}"
        try:
            if method == "GET":
                resp = self.session.request(method, url, params=params, timeout=self.timeout)
            else:
                resp = self.session.request(method, url, data=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Request to {path} failed: {e}") from e

        if resp.status_code == 429:
            if attempt >= 5:
                raise RateLimitError("Rate limited and max backoff attempts exceeded")
            backoff = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
            logger.warning(f"Rate limited on {path}, backing off {backoff:.2f}s (attempt {attempt + 1})")
            self._sleep(backoff)
            return self._request(method, path, params, pace=pace, attempt=attempt + 1)

        if not resp.ok:
            raise self._classify(resp)

        if resp.text:
            return resp.json()
        return {}

    def ticker(self, pair: str) -> Ticker:
        res = self._request("GET", "/api/1/ticker", {"pair": pair})
        return Ticker(pair=pair, ask=_dec(res.get("ask")), bid=_dec(res.get("bid")))

    def _closing_price(self, pair: str, since: float, interval: timedelta) -> Optional[Decimal]:
        since_ms = int(since * 1000)
        until_ms = since_ms + int(interval.total_seconds() * 1000)
        res = self._request("GET", "/api/1/trades", {"pair": pair, "since": since_ms}, pace=self.history_request_delay)
        in_window = [t for t in res.get("trades") or [] if since_ms <= int(t["timestamp"]) < until_ms]
        if not in_window:
            return None
        last = max(in_window, key=lambda t: int(t["timestamp"]))
        return _dec(last["price"])

    def previous_prices(self, pair: str, count: int, interval: timedelta) -> List[Decimal]:
        now = time.time()
        closing: List[Decimal] = []
        previous: Optional[Decimal] = None
        # oldest period first so a quiet period can reuse the previous close
        for i in range(count, 0, -1):
            price = self._closing_price(pair, now - i * interval.total_seconds(), interval)
            if price is None:
                price = previous
            if price is not None:
                closing.append(price)
                previous = price
        prices = [self.current_price(pair)]
        prices.extend(reversed(closing))
        return prices

    def fee_info(self, pair: str) -> FeeInfo:
        res = self._request("GET", "/api/1/fee_info", {"pair": pair})
        return FeeInfo(
            maker_fee=_dec(res.get("maker_fee")),
            taker_fee=_dec(res.get("taker_fee")),
            thirty_day_volume=_dec(res.get("thirty_day_volume")),
        )

    def place_market_order(self, request: MarketOrderRequest) -> str:
        params: Dict[str, str] = {"pair": request.pair, "type": request.side.value}
        if request.side == OrderSide.BUY:
            if request.counter_volume is None:
                raise MalformedRequestError("market BUY orders are sized by counter_volume")
            params["counter_volume"] = str(request.counter_volume)
        else:
            if request.base_volume is None:
                raise MalformedRequestError("market SELL orders are sized by base_volume")
            params["base_volume"] = str(request.base_volume)
        if request.base_account_id:
            params["base_account_id"] = request.base_account_id
        if request.counter_account_id:
            params["counter_account_id"] = request.counter_account_id
        res = self._request("POST", "/api/1/marketorder", params)
        order_id = res.get("order_id")
        if not order_id:
            raise MalformedRequestError(f"Order accepted without an order id: {res}")
        return order_id

    @staticmethod
    def _order_details(res: dict) -> OrderDetails:
        return OrderDetails(
            order_id=res.get("order_id", ""),
            pair=res.get("pair", ""),
            side=_SIDES.get(res.get("type", "")),
            state=res.get("state", ""),
            base=_dec(res.get("base")),
            counter=_dec(res.get("counter")),
            fee_base=_dec(res.get("fee_base")),
            fee_counter=_dec(res.get("fee_counter")),
            completed_timestamp=_ms_to_str(res.get("completed_timestamp")),
            creation_timestamp=_ms_to_str(res.get("creation_timestamp")),
        )

    def check_order(self, order_id: str) -> OrderDetails:
        return self._order_details(self._request("GET", f"/api/1/orders/{order_id}"))

    def balances(self, assets: Iterable[str]) -> List[Balance]:
        res = self._request("GET", "/api/1/balance", {"assets": list(assets)})
        return [
            Balance(
                account_id=str(b.get("account_id", "")),
                asset=b.get("asset", ""),
                balance=_dec(b.get("balance")),
                reserved=_dec(b.get("reserved")),
            )
            for b in res.get("balance") or []
        ]

    def list_orders(self, pair: str) -> List[OrderDetails]:
        res = self._request("GET", "/api/1/listorders", {"pair": pair})
        return [self._order_details(o) for o in res.get("orders") or []]
