"""テスト用のパブリッシャー"""

import json

from app.publisher import Envelope, EventPublisher


async def no_sleep(_delay: float) -> None:
    return None


class RecordingPublisher(EventPublisher):
    """送信したエンベロープを記録し、常に確認応答を返す"""

    def __init__(self, **kwargs) -> None:
        kwargs.setdefault("retry_base_delay", 0.0)
        kwargs.setdefault("sleep", no_sleep)
        super().__init__(**kwargs)
        self.sent: list[Envelope] = []

    async def _send(self, envelope: Envelope) -> bool:
        self.sent.append(envelope)
        return True

    @property
    def routing_keys(self) -> list[str]:
        return [e.routing_key for e in self.sent]

    def bodies(self, routing_key: str | None = None) -> list[dict]:
        return [
            json.loads(e.body) for e in self.sent
            if routing_key is None or e.routing_key == routing_key
        ]


class FailingPublisher(EventPublisher):
    """ブローカーに繋がらない"""

    def __init__(self, **kwargs) -> None:
        kwargs.setdefault("retry_base_delay", 0.0)
        kwargs.setdefault("sleep", no_sleep)
        super().__init__(**kwargs)
        self.attempts = 0

    async def _send(self, envelope: Envelope) -> bool:
        self.attempts += 1
        raise ConnectionError("broker unreachable")
