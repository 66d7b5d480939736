"""
Pluggable storage backend factory.

Creates the registry and blob store from configuration. The local backend
uses SQLite and a directory on disk. External backends register via the
``depot.backends`` entry point group.

External backend packages provide a factory function::

    def create_stores(config: DepotConfig) -> StoreBundle:
        ...

and register it in their pyproject.toml::

    [project.entry-points."depot.backends"]
    my-backend = "my_package.backend:create_stores"
"""

from typing import NamedTuple

from .config import DepotConfig
from .protocol import BlobStoreProtocol, RegistryProtocol


class StoreBundle(NamedTuple):
    """Storage backends returned by the factory."""
    registry: RegistryProtocol
    blobs: BlobStoreProtocol


def create_stores(config: DepotConfig) -> StoreBundle:
    """
    Create storage backends from configuration.

    For ``backend = "local"`` (default), creates the SQLite
    PartitionedRegistry and a LocalBlobStore.

    For other values, loads the backend via the ``depot.backends`` entry
    point group.
    """
    if config.backend == "local":
        return _create_local_stores(config)
    return _load_backend(config.backend, config)


def _create_local_stores(config: DepotConfig) -> StoreBundle:
    """Create the default local storage backends."""
    from .blobs import LocalBlobStore
    from .registry import PartitionedRegistry

    return StoreBundle(
        registry=PartitionedRegistry(config.registry_path),
        blobs=LocalBlobStore(config.uploads_dir),
    )


def _load_backend(name: str, config: DepotConfig) -> StoreBundle:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="depot.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. No backends registered."
    )
