"""
Order Saga Service — 冪等性台帳 (Idempotency Ledger)

クライアントが付与した request_id ごとに、コマンドの実行結果を保存する。
同じ request_id で再送されたコマンドは、処理を再実行せず保存済みの結果を返す。
→ 永続化・イベント発行といった外部から見える副作用は request_id ごとに高々 1 回。

    ┌──────────┐  request_id  ┌────────────────────┐
    │ Command  │─────────────▶│ processed_requests │── あり → 保存済み結果を返す
    └──────────┘              └────────────────────┘
                                       │ なし
                                       ▼
                               operation() を実行 → 結果を保存 → 返す

台帳は (request_id, command_type) の組で照合する。
同じ request_id を別のコマンドで使い回した場合はエラーにする。

既知の制約: operation() 成功後に台帳の保存が失敗すると、
次の再送では operation() が再実行されうる。
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import TypeAdapter
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .errors import IdempotencyKeyReuseError
from .schema import processed_requests

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CommandType(str, Enum):
    CREATE_ORDER = "CreateOrder"
    CANCEL_ORDER = "CancelOrder"
    SHIP_ORDER = "ShipOrder"


class IdempotencyLedger:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def execute(
        self,
        request_id: str,
        command_type: CommandType,
        operation: Callable[[], Awaitable[T]],
        result_type: Any,
    ) -> T:
        """
        request_id で冪等にコマンドを実行する。

        初回も再送も、台帳に保存した JSON から復元した値を返すので
        結果はバイト単位で一致する。
        """
        adapter = TypeAdapter(result_type)

        stored = await self._find(request_id)
        if stored is not None:
            self._check_command_type(request_id, stored.command_type, command_type)
            logger.info(
                "Replaying %s for request_id=%s", command_type.value, request_id
            )
            return self._decode(adapter, stored.result)

        result = await operation()
        encoded = adapter.dump_json(result).decode()

        async with self._session_factory() as session:
            try:
                await session.execute(
                    insert(processed_requests).values(
                        request_id=request_id,
                        command_type=command_type.value,
                        result=encoded,
                        created_at=datetime.now(timezone.utc),
                    )
                )
                await session.commit()
            except IntegrityError:
                # 並行して同じ request_id が処理された。先に保存された結果を返す。
                await session.rollback()
                logger.warning(
                    "request_id=%s was recorded concurrently, returning stored result",
                    request_id,
                )
                stored = await self._find(request_id)
                if stored is None:
                    raise
                self._check_command_type(request_id, stored.command_type, command_type)
                return self._decode(adapter, stored.result)

        return self._decode(adapter, encoded)

    async def _find(self, request_id: str):
        async with self._session_factory() as session:
            result = await session.execute(
                select(processed_requests).where(
                    processed_requests.c.request_id == request_id
                )
            )
            return result.fetchone()

    @staticmethod
    def _check_command_type(
        request_id: str, stored: str, requested: CommandType
    ) -> None:
        if stored != requested.value:
            raise IdempotencyKeyReuseError(request_id, stored, requested.value)

    @staticmethod
    def _decode(adapter: TypeAdapter, payload: str | None):
        if payload is None:
            return None
        return adapter.validate_json(payload)
