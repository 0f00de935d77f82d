"""Reconciler that installs and removes the operator's own components."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Protocol

from .metrics import (
    INSTALLATION_HIST_VEC,
    OPERATION_INSTALL,
    OPERATION_UNINSTALL,
    STATUS_FAILURE,
    STATUS_SUCCESS,
)
from .objects import AlreadyExistsError, ApiError, InMemoryClient, NotFoundError, Request, Result
from .types import Installation, ObjectMeta

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_KEY = Request(name="default", namespace="default")
INSTALLATION_FINALIZER = "blueprint.mirantis.com/installation-finalizer"


class Component(Protocol):
    """A component installed by the operator, such as a Helm controller or cert-manager."""

    name: str

    def check_exists(self) -> bool: ...

    def install(self) -> None: ...

    def uninstall(self) -> None: ...


class InstallationReconciler:
    """Installs every component while the Installation exists and removes them on deletion."""

    def __init__(self, client: InMemoryClient, components: Iterable[Component]) -> None:
        self.client = client
        self.components = list(components)

    def reconcile(self, request: Request) -> Result:
        """Bring the installed components in line with the Installation resource."""
        logger.info("Reconciling Installation instance")
        start = time.monotonic()
        try:
            instance: Installation = self.client.get(
                Installation.KIND, DEFAULT_INSTANCE_KEY.name, DEFAULT_INSTANCE_KEY.namespace
            )
        except NotFoundError:
            logger.info("Installation instance not found")
            return Result()

        if instance.metadata.is_being_deleted():
            self._uninstall_all(instance, start)
            return Result()

        if not instance.metadata.has_finalizer(INSTALLATION_FINALIZER):
            logger.info("Adding Finalizer for Installation")
            instance.metadata.add_finalizer(INSTALLATION_FINALIZER)
            try:
                self.client.update(instance)
            except ApiError:
                logger.error("Failed to update Installation resource to add finalizer")
                raise

        for component in self.components:
            try:
                exists = component.check_exists()
            except Exception:
                logger.error("failed to check if component %s already exists", component.name)
                raise
            if exists:
                logger.info("Component %s is already installed", component.name)
                continue

            logger.info("Component %s is not installed. Installing...", component.name)
            self._run(component, OPERATION_INSTALL, component.install, start)

        logger.debug("Finished reconciling Installation")
        return Result()

    def _uninstall_all(self, instance: Installation, start: float) -> None:
        logger.info("Uninstalling components")
        for component in self.components:
            self._run(component, OPERATION_UNINSTALL, component.uninstall, start)

        instance.metadata.remove_finalizer(INSTALLATION_FINALIZER)
        self.client.update(instance)

    @staticmethod
    def _run(component: Component, operation: str, action, start: float) -> None:
        try:
            action()
        except Exception:
            logger.error("Failed to %s component %s", operation, component.name)
            INSTALLATION_HIST_VEC.observe(
                (component.name, operation, STATUS_FAILURE), time.monotonic() - start
            )
            raise
        INSTALLATION_HIST_VEC.observe(
            (component.name, operation, STATUS_SUCCESS), time.monotonic() - start
        )


def try_create_installation_resource(client: InMemoryClient) -> bool:
    """Create the default Installation; return False if it exists or could not be created."""
    obj = Installation(
        metadata=ObjectMeta(
            name=DEFAULT_INSTANCE_KEY.name, namespace=DEFAULT_INSTANCE_KEY.namespace
        )
    )
    try:
        client.create(obj)
    except AlreadyExistsError:
        logger.info("Installation resource already exists")
        return False
    except ApiError as err:
        logger.error(
            "Installation resource has failed to create, blueprint operator may not function "
            "properly. Please create the Installation resource manually: %s",
            err,
        )
        return False
    return True