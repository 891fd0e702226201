from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from perpdex.core.clock import TimeProvider
from perpdex.core.errors import OracleUnavailable
from perpdex.oracles.base_oracle import PriceOracle, checked_price


class PythHermesOracle(PriceOracle):
    """Latest Pyth prices from a Hermes HTTP endpoint, keyed by feed id.

    Returns the raw integer ``price.price`` of the update (exponent not
    applied), which is what positions are denominated in. Staleness and
    confidence checks only run when configured.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 5.0,
        max_staleness_s: Optional[int] = None,
        max_conf_bps: Optional[int] = None,
        clock: Optional[TimeProvider] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.max_staleness_s = max_staleness_s
        self.max_conf_bps = max_conf_bps
        self.clock = clock or TimeProvider()

    @staticmethod
    def _normalize_id(feed_id: str) -> str:
        return feed_id[2:].lower() if feed_id.startswith("0x") else feed_id.lower()

    def _fetch(self, oracle_ref: str) -> Dict[str, Any]:
        url = f"{self.base_url}/v2/updates/price/latest"
        try:
            resp = self.session.get(url, params={"ids[]": [oracle_ref], "parsed": "true"}, timeout=self.timeout_s)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise OracleUnavailable("hermes request failed", oracle=oracle_ref, error=str(e)) from e
        if not isinstance(body, dict):
            raise OracleUnavailable("malformed hermes response", oracle=oracle_ref)
        wanted = self._normalize_id(oracle_ref)
        parsed = body.get("parsed") or []
        if not isinstance(parsed, list):
            raise OracleUnavailable("malformed hermes response", oracle=oracle_ref)
        for item in parsed:
            if not isinstance(item, dict) or self._normalize_id(str(item.get("id", ""))) != wanted:
                continue
            quote = item.get("price")
            if not isinstance(quote, dict):
                raise OracleUnavailable("malformed price entry", oracle=oracle_ref)
            return quote
        raise OracleUnavailable("feed missing from response", oracle=oracle_ref)

    @staticmethod
    def _quote_int(oracle_ref: str, quote: Dict[str, Any], name: str) -> int:
        raw = quote.get(name)
        if isinstance(raw, bool):
            raise OracleUnavailable(f"{name} is not numeric", oracle=oracle_ref)
        try:
            return int(raw)
        except (TypeError, ValueError, OverflowError) as e:
            raise OracleUnavailable(f"{name} is not numeric", oracle=oracle_ref, raw=raw) from e

    def get_price(self, oracle_ref: str) -> int:
        quote = self._fetch(oracle_ref)
        price = checked_price(oracle_ref, quote.get("price"))
        if self.max_staleness_s is not None:
            age = self.clock.unix_ts() - self._quote_int(oracle_ref, quote, "publish_time")
            if age > self.max_staleness_s:
                raise OracleUnavailable("stale price", oracle=oracle_ref, age_s=age)
        if self.max_conf_bps is not None:
            conf = self._quote_int(oracle_ref, quote, "conf")
            if conf * 10_000 > self.max_conf_bps * price:
                raise OracleUnavailable("confidence interval too wide", oracle=oracle_ref, conf=conf)
        return price
