"""
Order Saga Service — 例外定義

コマンド・イベント処理で発生するドメインエラー。
HTTP 層 (main.py) で各例外をステータスコードに対応付ける。

    OrderValidationError       → 400  (状態変更前に拒否)
    OrderForbiddenError        → 403  (他の購入者の注文)
    OrderNotFoundError         → 404
    IllegalTransitionError     → 409  (状態遷移の前提条件違反)
    ConcurrencyConflictError   → 409  (楽観的ロック競合、再試行可能)
    DuplicateRequestError      → (HTTP には出ない。オーケストレーターが既存の注文を返す)
    IdempotencyKeyReuseError   → 422  (同じ request_id を別コマンドで再利用)
"""


class OrderSagaError(Exception):
    """Order Saga の全ドメインエラーの基底クラス"""


class OrderValidationError(OrderSagaError):
    """入力値・バスケット内容が不正"""


class OrderNotFoundError(OrderSagaError):
    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderForbiddenError(OrderSagaError):
    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} belongs to a different buyer")
        self.order_id = order_id


class IllegalTransitionError(OrderSagaError):
    def __init__(self, order_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}"
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class ConcurrencyConflictError(OrderSagaError):
    """
    楽観的ロックの競合。

    読み込み後に別のハンドラが同じ注文を更新した。
    呼び出し側は注文を読み直して再試行できる。
    """

    retryable = True

    def __init__(self, order_id: int, expected_version: int) -> None:
        super().__init__(
            f"Order {order_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.order_id = order_id
        self.expected_version = expected_version


class IdempotencyKeyReuseError(OrderSagaError):
    def __init__(self, request_id: str, stored: str, requested: str) -> None:
        super().__init__(
            f"Request {request_id} was already used for {stored}, not {requested}"
        )
        self.request_id = request_id
        self.stored_command_type = stored
        self.requested_command_type = requested


class DuplicateRequestError(OrderSagaError):
    """同じ request_id の注文が並行して先に作成された"""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Order for request {request_id} already exists")
        self.request_id = request_id
