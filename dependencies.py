"""FastAPI dependencies that open the stores an ingest request works against"""
from dataclasses import dataclass
from functools import lru_cache

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from realtime import RealtimeBroker, RedisBroker
from storage import BlobStore, get_minio_client


@dataclass
class IngestStores:
    """Open handles to the relational store, blob store and pub/sub broker."""
    db: Session
    blobs: BlobStore
    broker: RealtimeBroker


def get_blob_store() -> BlobStore:
    return BlobStore(get_minio_client())


@lru_cache(maxsize=1)
def get_broker() -> RealtimeBroker:
    return RedisBroker(aioredis.from_url(settings.REDIS_URL))


def get_stores(
    db: Session = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
    broker: RealtimeBroker = Depends(get_broker),
) -> IngestStores:
    return IngestStores(db=db, blobs=blobs, broker=broker)
