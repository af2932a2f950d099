"""
外部 REST 服务客户端基础设施（账簿客户端基于此实现）
"""
from .base import BaseAPIClient, APIResponse, APIError

__all__ = ["BaseAPIClient", "APIResponse", "APIError"]
