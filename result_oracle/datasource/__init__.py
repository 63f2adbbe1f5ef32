from .base import DrawData, ResultDataSource
from .http_api import HttpJsonDataSource, HttpJsonDataSourceConfig

__all__ = [
    "DrawData",
    "ResultDataSource",
    "HttpJsonDataSource",
    "HttpJsonDataSourceConfig",
]
