"""
Order Service — 処理コンテキスト

グローバルなトレース/ログ設定を使わず、1 回の処理 (HTTP リクエスト
または受信メッセージ 1 件) ごとにコンテキストを作って明示的に渡す。

  correlation_id : 関連するリクエスト・イベントを横断して追跡する ID
  actor          : 操作した主体 (ユーザー ID / "order-worker" / "system")
  deadline       : 処理全体の締め切り (event loop の時刻)。publish のリトライもこれを守る
  tags           : ログに付与するキー・バリューの組 (呼び出し側が明示的に渡す)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import uuid4

SYSTEM_ACTOR = "system"


class _ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        ctx = self.extra["context"]
        prefix = f"[correlation_id={ctx.correlation_id}]"
        if ctx.tags:
            prefix += " " + " ".join(f"{k}={v}" for k, v in ctx.tags)
        return f"{prefix} {msg}", kwargs


@dataclass(frozen=True)
class OperationContext:
    correlation_id: str = field(default_factory=lambda: str(uuid4()))
    actor: str = SYSTEM_ACTOR
    deadline: float | None = None
    tags: tuple[tuple[str, str], ...] = ()

    @classmethod
    def start(
        cls,
        correlation_id: str | None = None,
        actor: str | None = None,
        timeout: float | None = None,
        tags: tuple[tuple[str, str], ...] = (),
    ) -> "OperationContext":
        """新しい処理を開始する。timeout を渡すと現在時刻からの締め切りを設定する。"""
        deadline = None
        if timeout is not None:
            deadline = asyncio.get_running_loop().time() + timeout
        return cls(
            correlation_id=correlation_id or str(uuid4()),
            actor=actor or SYSTEM_ACTOR,
            deadline=deadline,
            tags=tags,
        )

    def logger(self, base: logging.Logger) -> logging.LoggerAdapter:
        return _ContextAdapter(base, {"context": self})
