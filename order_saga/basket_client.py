"""
Order Saga Service — Basket Service クライアント

注文作成時に購入者のバスケット内容を取得する。
購入者のトークンをそのまま転送し、Basket Service 側で本人確認させる。
バスケットが存在しない (404) 場合は None を返す。
"""

import logging
from decimal import Decimal

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class BasketItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    menu_item_id: int
    menu_item_name: str
    menu_item_image_url: str
    unit_price: Decimal
    quantity: int


class CustomerBasket(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    buyer_id: str
    items: list[BasketItem]


class HttpBasketClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def get_basket(self, buyer_id: str, token: str) -> CustomerBasket | None:
        resp = await self.client.get(
            f"{self.base_url}/basket",
            headers={"Authorization": f"Bearer {token}"},
        )
        if resp.status_code == 404:
            logger.info("No basket found for buyer %s", buyer_id)
            return None
        resp.raise_for_status()
        return CustomerBasket.model_validate(resp.json())
