"""
Layer 3 – 缓存层
文档存储按 (symbol, kind) 唯一，写入为按键原子替换（不再是先删后插）。
后端优先级：MongoDB（持久化） → Redis（内存） → 进程内存
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from quote_service.config import settings
from quote_service.db import get_mongo_db, get_redis
from quote_service.models.stock import DataKind, StockDocument

logger = logging.getLogger(__name__)

_KEY_NAMESPACE = "stock"


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


def document_key(symbol: str, kind: DataKind) -> str:
    return _make_key(_KEY_NAMESPACE, symbol.upper(), DataKind(kind).value)


class PersistenceError(Exception):
    """文档存储操作失败"""


# ── 新鲜度策略 ────────────────────────────────────────────

class FreshnessPolicy:
    """判断缓存文档是否仍可使用：now - last_updated <= ttl"""

    def __init__(self, ttl: timedelta):
        self.ttl = ttl

    def is_fresh(self, document: StockDocument, now: Optional[datetime] = None) -> bool:
        last_updated = document.last_updated
        if last_updated is None:
            return False
        if last_updated.tzinfo is None:
            # 存储中的无时区时间按 UTC 处理
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        now = now or datetime.now(tz=timezone.utc)
        return now - last_updated <= self.ttl


# ── 存储接口 ──────────────────────────────────────────────

class DocumentStore(ABC):
    """抽象键值文档存储，键为 (symbol, kind)"""

    backend = "abstract"

    @abstractmethod
    async def find(self, symbol: str, kind: DataKind) -> Optional[StockDocument]: ...

    @abstractmethod
    async def upsert(self, document: StockDocument) -> None: ...

    @abstractmethod
    async def delete(self, symbol: str, kind: DataKind) -> None: ...

    async def exists(self, symbol: str, kind: DataKind) -> bool:
        return await self.find(symbol, kind) is not None

    async def stats(self) -> Dict[str, Any]:
        return {"backend": self.backend, "status": "healthy"}


def _restore(raw: Any, key: str) -> Optional[StockDocument]:
    """从存储数据还原文档，结构损坏时视为不存在"""
    try:
        if isinstance(raw, (str, bytes)):
            return StockDocument.model_validate_json(raw)
        return StockDocument.model_validate(raw)
    except ValidationError as exc:
        logger.warning(f"缓存文档结构损坏，按未命中处理: {key}: {exc}")
        return None


class MemoryDocumentStore(DocumentStore):
    """进程内存储：数据库不可用时的降级后端，也用于测试"""

    backend = "memory"

    def __init__(self):
        self._docs: Dict[Tuple[str, DataKind], StockDocument] = {}

    @staticmethod
    def _key(symbol: str, kind: DataKind) -> Tuple[str, DataKind]:
        return symbol.upper(), DataKind(kind)

    async def find(self, symbol: str, kind: DataKind) -> Optional[StockDocument]:
        return self._docs.get(self._key(symbol, kind))

    async def upsert(self, document: StockDocument) -> None:
        self._docs[self._key(document.symbol, document.kind)] = document

    async def delete(self, symbol: str, kind: DataKind) -> None:
        self._docs.pop(self._key(symbol, kind), None)

    async def stats(self) -> Dict[str, Any]:
        return {"backend": self.backend, "documents": len(self._docs), "status": "healthy"}


class MongoDocumentStore(DocumentStore):
    """MongoDB 存储：replace_one(upsert=True) 保证每个键只有一份文档"""

    backend = "mongodb"

    def __init__(self, db, collection: str = "stock_data"):
        self._collection = db[collection]

    @staticmethod
    def _filter(symbol: str, kind: DataKind) -> Dict[str, str]:
        return {"symbol": symbol.upper(), "kind": DataKind(kind).value}

    async def find(self, symbol: str, kind: DataKind) -> Optional[StockDocument]:
        query = self._filter(symbol, kind)
        try:
            doc = await self._collection.find_one(query, {"_id": 0})
        except Exception as exc:
            raise PersistenceError(f"MongoDB 读取失败: {exc}") from exc
        if doc is None:
            return None
        return _restore(doc, document_key(symbol, kind))

    async def upsert(self, document: StockDocument) -> None:
        body = document.to_storage()
        body["symbol"] = document.symbol.upper()
        try:
            await self._collection.replace_one(
                self._filter(document.symbol, document.kind), body, upsert=True
            )
        except Exception as exc:
            raise PersistenceError(f"MongoDB 写入失败: {exc}") from exc
        logger.debug(f"文档写入（MongoDB）: {document_key(document.symbol, document.kind)}")

    async def delete(self, symbol: str, kind: DataKind) -> None:
        try:
            await self._collection.delete_one(self._filter(symbol, kind))
        except Exception as exc:
            raise PersistenceError(f"MongoDB 删除失败: {exc}") from exc

    async def exists(self, symbol: str, kind: DataKind) -> bool:
        try:
            count = await self._collection.count_documents(self._filter(symbol, kind), limit=1)
        except Exception as exc:
            raise PersistenceError(f"MongoDB 查询失败: {exc}") from exc
        return count > 0

    async def stats(self) -> Dict[str, Any]:
        try:
            count = await self._collection.count_documents({})
            return {"backend": self.backend, "documents": count, "status": "healthy"}
        except Exception as exc:
            return {"backend": self.backend, "status": "error", "error": str(exc)}


class RedisDocumentStore(DocumentStore):
    """Redis 存储：SET 单键写入本身是原子的"""

    backend = "redis"

    def __init__(self, redis):
        self._redis = redis

    async def find(self, symbol: str, kind: DataKind) -> Optional[StockDocument]:
        key = document_key(symbol, kind)
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            raise PersistenceError(f"Redis 读取失败: {exc}") from exc
        if not raw:
            return None
        return _restore(raw, key)

    async def upsert(self, document: StockDocument) -> None:
        key = document_key(document.symbol, document.kind)
        serialized = json.dumps(document.to_storage(), ensure_ascii=False)
        try:
            await self._redis.set(key, serialized)
        except Exception as exc:
            raise PersistenceError(f"Redis 写入失败: {exc}") from exc
        logger.debug(f"文档写入（Redis）: {key}")

    async def delete(self, symbol: str, kind: DataKind) -> None:
        try:
            await self._redis.delete(document_key(symbol, kind))
        except Exception as exc:
            raise PersistenceError(f"Redis 删除失败: {exc}") from exc

    async def exists(self, symbol: str, kind: DataKind) -> bool:
        try:
            return bool(await self._redis.exists(document_key(symbol, kind)))
        except Exception as exc:
            raise PersistenceError(f"Redis 查询失败: {exc}") from exc

    async def stats(self) -> Dict[str, Any]:
        try:
            return {"backend": self.backend, "keys": await self._redis.dbsize(), "status": "healthy"}
        except Exception as exc:
            return {"backend": self.backend, "status": "error", "error": str(exc)}


# ── 模块级别单例 ──────────────────────────────────────────
_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """按可用连接选择后端：MongoDB → Redis → 内存"""
    global _store
    if _store is None:
        db = get_mongo_db()
        redis = get_redis()
        if db is not None:
            _store = MongoDocumentStore(db, settings.STOCK_COLLECTION)
        elif redis is not None:
            _store = RedisDocumentStore(redis)
        else:
            logger.warning("⚠️ 无可用数据库，文档存储降级为进程内存")
            _store = MemoryDocumentStore()
        logger.info(f"文档存储后端: {_store.backend}")
    return _store


def reset_document_store() -> None:
    """连接变化（启动/关闭）后重新选择后端"""
    global _store
    _store = None
