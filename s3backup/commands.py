"""Binding of services to stores into runnable backup/restore operations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Type

from .config import ConfigResolver
from .services import GogsService, MySQLService, PostgresService, ServiceBackend, TarballService
from .stores import FilesystemStore, ObjectStore, StoreBackend
from .utils import artifact_prefix

LOGGER = logging.getLogger(__name__)

ACTIONS = ("backup", "restore")

SERVICES: Dict[str, Type[ServiceBackend]] = {
    "mysql": MySQLService,
    "postgres": PostgresService,
    "gogs": GogsService,
    "tarball": TarballService,
}

STORES: Dict[str, Type[StoreBackend]] = {
    "object-store": ObjectStore,
    "filesystem": FilesystemStore,
}

STORE_ALIASES = {"s3": "object-store"}


@dataclass(frozen=True)
class Operation:
    """One service bound to one store.

    Errors from either side propagate unchanged; artifacts already written
    to the save directory are left in place.
    """

    service: str
    store: str
    clock: Callable[[], datetime] = datetime.now

    def backends(self, service_config, store_config) -> Tuple[ServiceBackend, StoreBackend]:
        service = SERVICES[self.service](service_config, clock=self.clock)
        store = STORES[self.store](store_config)
        return service, store

    def backup(self, service_config, store_config) -> str:
        service, store = self.backends(service_config, store_config)
        LOGGER.info("Starting %s backup to %s.", self.service, self.store)
        artifact = service.backup()
        key = store.upload(artifact)
        LOGGER.info("Backup of %s finished: '%s'.", self.service, key)
        return key

    def restore(self, service_config, store_config, key: Optional[str] = None) -> str:
        service, store = self.backends(service_config, store_config)
        if not key:
            key = store.latest(artifact_prefix(service.name))
            LOGGER.info("No artifact given, restoring the newest one: '%s'.", key)
        artifact = store.fetch(key)
        service.restore(artifact)
        LOGGER.info("Restore of %s from '%s' finished.", self.service, artifact)
        return artifact

    def run(self, action: str, resolver: ConfigResolver, key: Optional[str] = None) -> str:
        service_config = resolver.service_config(self.service)
        store_config = resolver.store_config(self.store)
        if action == "backup":
            return self.backup(service_config, store_config)
        if action == "restore":
            return self.restore(service_config, store_config, key)
        raise ValueError(f"Unknown action '{action}'.")


def build_operations(clock=datetime.now) -> Dict[Tuple[str, str], Operation]:
    """Return an operation for every service and store pair."""

    return {(service, store): Operation(service, store, clock) for service in SERVICES for store in STORES}


__all__ = ["ACTIONS", "Operation", "SERVICES", "STORES", "STORE_ALIASES", "build_operations"]
