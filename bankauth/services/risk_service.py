"""Rule-based request risk scoring."""
from __future__ import annotations

import logging
import re
from typing import Optional

from ..clock import Clock
from ..config import Settings
from ..kvstore import KeyValueStore
from ..schemas import RequestContext, RiskAssessment

logger = logging.getLogger(__name__)

BOT_USER_AGENT = re.compile(
    r"bot|crawler|spider|scrapy|curl|wget|python-requests|httpclient|headless|phantomjs|selenium",
    re.IGNORECASE,
)
OUTDATED_BROWSERS = (
    (re.compile(r"MSIE \d|Trident/"), 0),
    (re.compile(r"Chrome/(\d+)"), 90),
    (re.compile(r"Firefox/(\d+)"), 90),
)

KNOWN_IP_TTL_SECONDS = 90 * 24 * 3600


class SecurityAnalyzer:
    """Scores a request context; thresholds come from settings.

    The analyzer never blocks the pipeline because of its own failures:
    any error is logged and a zero-risk assessment is returned.
    """

    def __init__(self, kv: KeyValueStore, settings: Settings, clock: Clock) -> None:
        self.kv = kv
        self.settings = settings
        self.clock = clock

    async def analyze_request(self, context: RequestContext, user_id: Optional[str] = None) -> RiskAssessment:
        try:
            return await self._analyze(context, user_id)
        except Exception as exc:
            logger.warning("Análisis de riesgo no disponible, se permite la solicitud: %s", exc)
            return RiskAssessment(blocked=False, risk_score=0, reasons=["analyzer_unavailable"])

    async def _analyze(self, context: RequestContext, user_id: Optional[str]) -> RiskAssessment:
        score = 0
        reasons: list[str] = []

        ua_score, ua_reasons = self._score_user_agent(context.user_agent)
        score += ua_score
        reasons.extend(ua_reasons)

        now = self.clock.now().timestamp()
        requests, _ = await self.kv.window_hit(
            f"risk:velocity:{context.ip_address}", now, self.settings.velocity_window_seconds
        )
        if requests > self.settings.velocity_max_requests:
            score += 30
            reasons.append("high_velocity")

        failures, _ = await self.kv.window_count(
            f"risk:ip_failures:{context.ip_address}", now, self.settings.ip_failure_window_seconds
        )
        if failures >= self.settings.ip_failure_block_count:
            score += 40
            reasons.append("ip_failure_history")

        if user_id:
            known = await self.kv.smembers(f"risk:known_ips:{user_id}")
            if known and context.ip_address not in known:
                score += 20
                reasons.append("unknown_ip")

        score = min(score, 100)
        blocked = score >= self.settings.risk_block_threshold
        if blocked:
            logger.warning("Solicitud bloqueada ip=%s score=%s reasons=%s", context.ip_address, score, reasons)
        return RiskAssessment(blocked=blocked, risk_score=score, level=self._level(score), reasons=reasons)

    @staticmethod
    def _score_user_agent(user_agent: Optional[str]) -> tuple[int, list[str]]:
        if user_agent and BOT_USER_AGENT.search(user_agent):
            return 30, ["bot_user_agent"]
        if not user_agent or len(user_agent.strip()) < 10:
            return 20, ["missing_user_agent"]
        for pattern, minimum in OUTDATED_BROWSERS:
            match = pattern.search(user_agent)
            if match and (not match.groups() or int(match.group(1)) < minimum):
                return 15, ["outdated_browser"]
        return 0, []

    def _level(self, score: int) -> str:
        if score >= self.settings.risk_block_threshold:
            return "critical"
        if score >= self.settings.risk_warn_threshold:
            return "high"
        if score > 0:
            return "medium"
        return "low"

    async def record_success(self, user_id: str, ip_address: str) -> None:
        try:
            await self.kv.sadd(f"risk:known_ips:{user_id}", ip_address, ttl=KNOWN_IP_TTL_SECONDS)
        except Exception as exc:
            logger.warning("No se pudo registrar la IP conocida: %s", exc)

    async def record_failure(self, ip_address: str) -> None:
        try:
            await self.kv.window_hit(
                f"risk:ip_failures:{ip_address}",
                self.clock.now().timestamp(),
                self.settings.ip_failure_window_seconds,
            )
        except Exception as exc:
            logger.warning("No se pudo registrar el fallo de la IP: %s", exc)
