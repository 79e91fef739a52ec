"""Product catalog access: tenant-scoped embedding scans and FTS5 keyword search."""

from __future__ import annotations

import json
import re
from typing import Sequence

import aiosqlite

from shopchat.errors import RetrievalError
from shopchat.log import get_logger
from shopchat.storage.database import Database
from shopchat.storage.models import Product

logger = get_logger(__name__)

_TOKEN_PATTERN = re.compile(r"[\w\u1780-\u17FF]+")
MAX_MATCH_TOKENS = 16

_PRODUCT_COLUMNS = (
    "p.id, p.tenant_id, p.name, p.sku, p.size, p.description, p.price, "
    "p.image_url, p.category_name, p.stock"
)


def build_match_expression(text: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted tokens ('' if none)."""
    seen: list[str] = []
    for token in _TOKEN_PATTERN.findall(text.lower()):
        if token not in seen:
            seen.append(token)
        if len(seen) >= MAX_MATCH_TOKENS:
            break
    return " OR ".join(f'"{token}"' for token in seen)


def _placeholders(values: Sequence[str]) -> str:
    return ",".join("?" for _ in values)


class CatalogRepository:
    """Read side of the products table. Every query is scoped by tenant id."""

    def __init__(self, db: Database):
        self._db = db

    async def add_product(self, product: Product) -> None:
        """Insert or replace a catalog record (used by seeding and embedding rebuilds)."""
        await self._db.conn.execute(
            """INSERT INTO products
               (id, tenant_id, name, sku, size, description, price, image_url,
                category_name, stock, embedding)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   tenant_id = excluded.tenant_id,
                   name = excluded.name,
                   sku = excluded.sku,
                   size = excluded.size,
                   description = excluded.description,
                   price = excluded.price,
                   image_url = excluded.image_url,
                   category_name = excluded.category_name,
                   stock = excluded.stock,
                   embedding = excluded.embedding""",
            (
                product.id,
                product.tenant_id,
                product.name,
                product.sku,
                product.size,
                product.description,
                product.price,
                product.image_url,
                product.category_name,
                product.stock,
                json.dumps(product.embedding) if product.embedding is not None else None,
            ),
        )
        await self._db.conn.commit()

    async def embedded_products(self, tenant_ids: Sequence[str]) -> list[Product]:
        """All products of the tenants that carry a stored embedding."""
        sql = (
            f"SELECT {_PRODUCT_COLUMNS}, p.embedding FROM products p "
            f"WHERE p.tenant_id IN ({_placeholders(tenant_ids)}) "
            "AND p.embedding IS NOT NULL ORDER BY p.id"
        )
        rows = await self._fetch(sql, tuple(tenant_ids))
        products: list[Product] = []
        for row in rows:
            try:
                embedding = json.loads(row["embedding"])
            except (TypeError, ValueError):
                logger.warning("product_embedding_unreadable", product_id=row["id"])
                continue
            products.append(self._row_to_product(row, embedding))
        return products

    async def keyword_search(
        self, tenant_ids: Sequence[str], text: str, limit: int
    ) -> list[tuple[Product, float]]:
        """FTS5 match over name/description/sku/category. Returns (product, bm25)."""
        expression = build_match_expression(text)
        if not expression:
            return []
        sql = (
            f"SELECT {_PRODUCT_COLUMNS}, bm25(products_fts) AS rank "
            "FROM products_fts JOIN products p ON p.rowid = products_fts.rowid "
            "WHERE products_fts MATCH ? "
            f"AND p.tenant_id IN ({_placeholders(tenant_ids)}) "
            "ORDER BY rank ASC, p.id ASC LIMIT ?"
        )
        rows = await self._fetch(sql, (expression, *tenant_ids, limit))
        return [(self._row_to_product(row), float(row["rank"])) for row in rows]

    async def _fetch(self, sql: str, params: tuple) -> list[aiosqlite.Row]:
        try:
            cursor = await self._db.conn.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise RetrievalError(f"catalog query failed: {e}") from e

    @staticmethod
    def _row_to_product(row, embedding: list[float] | None = None) -> Product:
        return Product(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            sku=row["sku"],
            size=row["size"],
            description=row["description"] or "",
            price=row["price"],
            image_url=row["image_url"],
            category_name=row["category_name"],
            stock=row["stock"],
            embedding=embedding,
        )
