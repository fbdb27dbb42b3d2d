"""
Common — API レスポンスエンベロープ

すべてのサービスが同じ形でレスポンスを返す:
    {success, data?, message?, error?}

None のキーは省略する。
"""

import math
from typing import Any


def api_response(
    success: bool,
    data: Any = None,
    message: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> dict:
    body: dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    if error is not None:
        body["error"] = error
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def pagination(page: int, limit: int, total: int) -> dict:
    """ページング情報を組み立てる。"""
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }
