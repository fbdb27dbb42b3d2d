"""
Common — キューメッセージ定義

Payment Service が決済成功ごとに1回発行し、Transaction Worker が消費する。
ワイヤ上は camelCase の JSON:
    {customerId, orderId, productId, amount, transactionId, timestamp}

発行側では永続化しない。永続形は監査レコード(transaction_history)のみ。
"""

import math
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator
from pydantic.alias_generators import to_camel


class TransactionMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: StrictStr = Field(min_length=1)
    order_id: StrictStr = Field(min_length=1)
    product_id: StrictStr = Field(min_length=1)
    amount: float
    transaction_id: StrictStr = Field(min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("amount", mode="before")
    @classmethod
    def _non_negative_number(cls, value):
        # bool は int のサブクラスなので明示的に弾く
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("amount must be a number")
        if not math.isfinite(value) or value < 0:
            raise ValueError("amount must be a non-negative number")
        return value

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()
