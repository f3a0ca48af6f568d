"""
Order Saga Service — 設定

環境変数から一度だけ読み込む。DATABASE_URL のみ必須。
"""

import os
from dataclasses import dataclass, field


def _split(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    basket_service_url: str = "http://localhost:8083"
    grace_period_seconds: float = 60.0
    order_events_stream: str = "order_events"
    inbound_streams: tuple[str, ...] = field(
        default=("inventory_events", "payment_events", "order_events")
    )
    consumer_group: str = "order-saga"
    consumer_name: str = "order-saga-1"
    dead_letter_stream: str = "order_events_dead_letter"
    event_handler_timeout_seconds: float = 30.0
    http_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            basket_service_url=env.get("BASKET_SERVICE_URL", "http://localhost:8083"),
            grace_period_seconds=float(env.get("GRACE_PERIOD_SECONDS", "60")),
            order_events_stream=env.get("ORDER_EVENTS_STREAM", "order_events"),
            inbound_streams=_split(
                env.get(
                    "ORDER_INBOUND_STREAMS",
                    "inventory_events,payment_events,order_events",
                )
            ),
            consumer_group=env.get("ORDER_CONSUMER_GROUP", "order-saga"),
            consumer_name=env.get("ORDER_CONSUMER_NAME", "order-saga-1"),
            dead_letter_stream=env.get(
                "ORDER_DEAD_LETTER_STREAM", "order_events_dead_letter"
            ),
            event_handler_timeout_seconds=float(
                env.get("EVENT_HANDLER_TIMEOUT_SECONDS", "30")
            ),
            http_timeout_seconds=float(env.get("HTTP_TIMEOUT_SECONDS", "10")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
