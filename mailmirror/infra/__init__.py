"""Infrastructure modules for mailmirror."""

from . import cache_store, config_store, graph_client, mapping, storage

__all__ = ["cache_store", "config_store", "graph_client", "mapping", "storage"]
