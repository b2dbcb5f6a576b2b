from foamsync.client.http_store import HttpStoreClient

__all__ = ["HttpStoreClient"]
