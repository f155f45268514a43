"""
Advisory client: asks an LLM reasoning service for buy / sell recommendations.

The service replies in free text. The only contract is a literal marker:

    Buy Signal: Yes | No             (buy mode)
    Recommendation: SELL | HOLD      (sell mode)

Parsing is isolated in ``parse_buy_signal`` / ``parse_sell_recommendation``,
which return a tagged AdvisoryDecision. A reply without the marker is a
PARSE_FAILURE and never an action.
"""

import json
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import openai

from .config import AdvisoryConfig
from .errors import AdvisoryFailure
from .logging_setup import logger
from .market_data import PriceHistory, TokenInfo
from .trade import Trade

_BUY_MARKER = re.compile(r"buy\s+signal\s*:?\s*[*_\[\s]*(yes|no)\b(?!\s*(?:/|or\b))", re.IGNORECASE)
_SELL_MARKER = re.compile(r"recommendation\s*:?\s*[*_\[\s]*(sell|hold)\b(?!\s*(?:/|or\b))", re.IGNORECASE)
_REASON = re.compile(r"reason\s*:\s*[*_]*\s*(.+)", re.IGNORECASE)

MAX_RATIONALE_CHARS = 500


class Decision(str, Enum):
    BUY = "BUY"
    NO_BUY = "NO_BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    PARSE_FAILURE = "PARSE_FAILURE"


@dataclass
class AdvisoryDecision:
    """Parsed advisory reply.

    Attributes:
        decision: Tagged outcome
        rationale: Free-text reason extracted from the reply (capped)
        raw: The full reply text
        failed: True when this is a fallback for a failed or unparseable call
    """

    decision: Decision
    rationale: str = ""
    raw: str = ""
    failed: bool = False

    @property
    def is_buy(self) -> bool:
        return self.decision is Decision.BUY

    @property
    def is_sell(self) -> bool:
        return self.decision is Decision.SELL

    @property
    def signal(self):
        """True/False in buy mode, "SELL"/"HOLD" in sell mode, None on parse failure."""
        if self.decision in (Decision.BUY, Decision.NO_BUY):
            return self.decision is Decision.BUY
        if self.decision in (Decision.SELL, Decision.HOLD):
            return self.decision.value
        return None


def _rationale(text: str) -> str:
    match = _REASON.search(text)
    reason = match.group(1) if match else text
    return reason.strip().strip("*").strip()[:MAX_RATIONALE_CHARS]


def parse_buy_signal(text: Optional[str]) -> AdvisoryDecision:
    """Extract the ``Buy Signal: Yes|No`` marker from a reply."""
    text = text or ""
    match = _BUY_MARKER.search(text)
    if not match:
        return AdvisoryDecision(Decision.PARSE_FAILURE, rationale="", raw=text)
    decision = Decision.BUY if match.group(1).lower() == "yes" else Decision.NO_BUY
    return AdvisoryDecision(decision, rationale=_rationale(text), raw=text)


def parse_sell_recommendation(text: Optional[str]) -> AdvisoryDecision:
    """Extract the ``Recommendation: SELL|HOLD`` marker from a reply."""
    text = text or ""
    match = _SELL_MARKER.search(text)
    if not match:
        return AdvisoryDecision(Decision.PARSE_FAILURE, rationale="", raw=text)
    decision = Decision.SELL if match.group(1).lower() == "sell" else Decision.HOLD
    return AdvisoryDecision(decision, rationale=_rationale(text), raw=text)


BUY_PROMPT = """You are a cryptocurrency spot trading analyst. Decide whether the token below is a good buy right now.

Weigh:
- Deployer fee share (lower is better).
- Canonical status.
- EVM contract availability.
- The price trend in the series (uptrend, stability, undervaluation). If "simulated" is true the prices are placeholders and must not count as evidence.

Answer in exactly this format:
**Token: {name}**
- Buy Signal: [Yes or No]
- Reason: [one or two sentences]
- Price Trend: [Uptrend / Downtrend / Stable / Simulated]

Say "No" whenever the case is unclear.

Data:
{data}
"""

SELL_PROMPT = """You are a cryptocurrency spot trading analyst. An open position in {name} must be either sold now or held.

Position:
- Amount: {amount}
- Buy price: {buy_price}
- Current price: {current_price}
- Unrealized profit/loss: {profit_loss} USD

Consider the recent price trend and volatility in the series below.

Answer in exactly this format:
**Recommendation: [SELL/HOLD]**
- Reason: [one or two sentences]
- Price Trend: [trend or "Simulated"]

Data:
{data}
"""


class AdvisoryClient:
    """Single-attempt client for the reasoning service (OpenAI-compatible API).

    ``evaluate_buy`` raises AdvisoryFailure on any transport or parse problem;
    ``evaluate_sell`` degrades to HOLD. Both count failures in ``failures``.
    """

    def __init__(self, config: AdvisoryConfig, api_key: str, *, client: Optional[Any] = None):
        self.config = config
        # retries stay off: one attempt per token per cycle
        self.client = client or openai.AsyncOpenAI(
            api_key=api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )
        self.failures = 0

    async def close(self):
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()

    async def _complete(self, prompt: str) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.config.max_tokens,
            )
        except openai.OpenAIError as e:
            raise AdvisoryFailure(f"Advisory call failed: {e}") from e
        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise AdvisoryFailure(f"Advisory reply had no content: {e}") from e
        if not content:
            raise AdvisoryFailure("Advisory reply was empty")
        return content

    def _payload(self, history: PriceHistory, **extra: Any) -> str:
        data: Dict[str, Any] = dict(extra)
        data["priceHistory"] = history.to_payload(self.config.max_price_points)
        return json.dumps(data, indent=2, default=str)

    async def evaluate_buy(self, token: TokenInfo, history: PriceHistory) -> AdvisoryDecision:
        """Ask whether to open a position in ``token``.

        Raises:
            AdvisoryFailure: transport error or a reply without the buy marker
        """
        prompt = BUY_PROMPT.format(name=token.name, data=self._payload(history, token=token.to_payload()))
        try:
            reply = await self._complete(prompt)
            decision = parse_buy_signal(reply)
            if decision.decision is Decision.PARSE_FAILURE:
                raise AdvisoryFailure(f"No buy marker in advisory reply for {token.name}")
        except AdvisoryFailure:
            self.failures += 1
            raise
        logger.info(f"Advisory buy decision | token={token.name} decision={decision.decision.value}")
        return decision

    async def evaluate_sell(
        self,
        trade: Trade,
        history: PriceHistory,
        current_price: Decimal,
        profit_loss: Decimal,
        token: Optional[TokenInfo] = None,
    ) -> AdvisoryDecision:
        """Ask whether to close ``trade``. Failures and unparseable replies yield HOLD."""
        data = self._payload(
            history,
            token=token.to_payload() if token else {"name": trade.token_name},
            profitLoss=float(profit_loss),
        )
        prompt = SELL_PROMPT.format(
            name=trade.token_name,
            amount=trade.amount,
            buy_price=trade.buy_price,
            current_price=current_price,
            profit_loss=f"{profit_loss:.2f}",
            data=data,
        )
        try:
            reply = await self._complete(prompt)
        except AdvisoryFailure as e:
            self.failures += 1
            logger.warning(f"Advisory sell call failed, holding | token={trade.token_name} error={e}")
            return AdvisoryDecision(Decision.HOLD, rationale=str(e), failed=True)

        decision = parse_sell_recommendation(reply)
        if decision.decision is Decision.PARSE_FAILURE:
            self.failures += 1
            logger.warning(f"No recommendation marker, holding | token={trade.token_name}")
            return AdvisoryDecision(Decision.HOLD, rationale="unparseable advisory reply", raw=reply, failed=True)
        logger.info(f"Advisory sell decision | token={trade.token_name} decision={decision.decision.value}")
        return decision
