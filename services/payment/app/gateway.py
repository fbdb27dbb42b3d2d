"""
Payment Service — 決済ゲートウェイのシミュレーター

本物のゲートウェイの代わりに、遅延と不確実性だけを再現する。

  - 500ms〜2000ms の一様分布の遅延 (呼び出し側は正常な遅延として扱う)
  - 上限以上 / 下限未満の金額は必ず失敗
  - それ以外は確率 success_rate で成功、失敗時は残高不足かカード拒否

成否の判定 (decide) と乱数源・sleep は差し替え可能。
テストでは決定的な成功/失敗を注入する。
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import uuid4

AMOUNT_EXCEEDS_LIMIT = "Transaction amount exceeds limit"
MINIMUM_NOT_MET = "Minimum transaction amount not met"
INSUFFICIENT_FUNDS = "Insufficient funds"
CARD_DECLINED = "Card declined by issuer"


@dataclass(frozen=True)
class GatewayOutcome:
    success: bool
    transaction_id: str | None = None
    error: str | None = None


def generate_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{uuid4().hex[:10]}"


class SimulatedGateway:
    def __init__(
        self,
        success_rate: float = 0.95,
        min_delay: float = 0.5,
        max_delay: float = 2.0,
        max_amount: float = 100_000_000,
        min_amount: float = 1,
        rng: random.Random | None = None,
        decide: Callable[[float], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.success_rate = success_rate
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.max_amount = max_amount
        self.min_amount = min_amount
        self.rng = rng or random.Random()
        self.decide = decide or self._random_decision
        self.sleep = sleep

    async def process(self, amount: float) -> GatewayOutcome:
        await self.sleep(self.rng.uniform(self.min_delay, self.max_delay))

        if amount >= self.max_amount:
            return GatewayOutcome(False, error=AMOUNT_EXCEEDS_LIMIT)
        if amount < self.min_amount:
            return GatewayOutcome(False, error=MINIMUM_NOT_MET)

        if self.decide(amount):
            return GatewayOutcome(True, transaction_id=generate_transaction_id())
        return GatewayOutcome(False, error=self.rng.choice([INSUFFICIENT_FUNDS, CARD_DECLINED]))

    def _random_decision(self, amount: float) -> bool:
        return self.rng.random() < self.success_rate
