from .base import CloudStorageClient
from .oauth_http import OAuthHttpClient

__all__ = ["CloudStorageClient", "OAuthHttpClient"]
