"""Concrete supervised services."""

from services.ganache import GanachePoCoService, GanacheService
from services.ipfs import IpfsService
from services.market import MarketService
from services.market_api import MarketApiService
from services.market_watcher import MarketWatcherService
from services.mongo import MongoService
from services.redis import RedisService
from services.spring import (
    BlockchainAdapterService,
    CoreService,
    ResultProxyService,
    SmsService,
    WorkerService,
)

# One class per registered type; docker has no managed class
BUILTIN_SERVICES = (
    GanacheService,
    IpfsService,
    MongoService,
    RedisService,
    MarketService,
    SmsService,
    ResultProxyService,
    BlockchainAdapterService,
    CoreService,
    WorkerService,
)

__all__ = [
    "BUILTIN_SERVICES",
    "BlockchainAdapterService",
    "CoreService",
    "GanachePoCoService",
    "GanacheService",
    "IpfsService",
    "MarketApiService",
    "MarketService",
    "MarketWatcherService",
    "MongoService",
    "RedisService",
    "ResultProxyService",
    "SmsService",
    "WorkerService",
]
