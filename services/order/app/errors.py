"""
Order Service — 例外の分類

サービス層で発生するエラーはすべて OrderServiceError を継承する。
API 層 (main.py) はこれらを HTTP ステータスに変換し、
Worker (subscriber.py) は ack / dead-letter / 再配送の判断に使う。
"""


class OrderServiceError(Exception):
    """Order Service の基底例外"""


class ValidationError(OrderServiceError):
    """入力が不正。再試行しても結果は変わらない (4xx 相当)。"""


class NotFoundError(OrderServiceError):
    """指定された注文が存在しない"""

    def __init__(self, order_id) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidTransitionError(OrderServiceError):
    """状態遷移表に存在しない遷移が要求された"""

    def __init__(self, current, requested) -> None:
        super().__init__(
            f"Invalid status transition from {current.value} to {requested.value}"
        )
        self.current = current
        self.requested = requested


class ConcurrencyConflictError(OrderServiceError):
    """読み込み後に他の処理が同じ注文を更新した (楽観的ロックの競合)"""

    def __init__(self, order_id, expected_version: int) -> None:
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})"
        )
        self.order_id = order_id
        self.expected_version = expected_version


class TransientStoreError(OrderServiceError):
    """DB のタイムアウトや接続断。呼び出し側が回数を限って再試行する。"""


class PublishError(OrderServiceError):
    """リトライを使い切ってもブローカーへの発行・確認ができなかった"""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class DeserializationError(OrderServiceError):
    """受信メッセージのペイロードが壊れている"""

    def __init__(self, routing_key: str, message: str) -> None:
        super().__init__(f"Malformed {routing_key} payload: {message}")
        self.routing_key = routing_key
