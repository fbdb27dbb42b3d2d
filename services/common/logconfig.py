"""
Common — ログ設定

各サービスの lifespan で configure_logging() を呼ぶ。
フォーマットにサービス名を入れ、レベルは LOG_LEVEL で決める。
"""

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s"


def configure_logging(service_name: str, level: str | None = None) -> None:
    """ルートロガーにサービス名入りのフォーマットを設定する。"""
    level = level or os.environ.get("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT.format(service=service_name),
        force=True,
    )
