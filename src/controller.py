"""
Operator Controller - Event-driven reconciliation scheduler.

Similar to Kubernetes controllers: object events are routed through the
watches of each reconciler plugin into a work queue, and a fixed pool of
workers calls the reconcilers. Failed reconciles are retried after a delay,
and a periodic resync re-queues every primary object so dropped events are
eventually recovered.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from db import DatabaseManager, StoreError
from events import EventBus, EventSubscription, EventType, ObjectEvent
from plugins.reconcilers.base import (
    DEFAULT_RECONCILE_WAIT,
    ReconcilerContext,
    ReconcilerPlugin,
    ReconcileRequest,
)
from plugins.registry import PluginRegistry, get_registry
from workqueue import WorkQueue

logger = logging.getLogger(__name__)

# Work queue key: (reconciler name, request)
QueueKey = Tuple[str, ReconcileRequest]


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    reconcile_interval: int = 300
    max_concurrent_reconciles: int = 5
    reconcile_wait: int = DEFAULT_RECONCILE_WAIT
    # Empty means every registered reconciler
    enabled_reconcilers: List[str] = field(default_factory=list)


class Controller:
    """
    Main controller that schedules reconciler plugins.

    Subscribes to the event bus, maps each event to reconcile requests via
    the reconcilers' watches, and runs the requests on a pool of workers.
    A request is never reconciled by two workers at the same time.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.running = False
        self._event_bus = event_bus

        self.queue = WorkQueue()
        self._shutdown_event = asyncio.Event()
        self._ctx = ReconcilerContext(
            db=self.db,
            shutdown_event=self._shutdown_event,
            reconcile_wait=self.config.reconcile_wait,
        )
        self._reconcilers: Dict[str, ReconcilerPlugin] = {}
        self._subscriber_id: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def reconcilers(self) -> Dict[str, ReconcilerPlugin]:
        return self._reconcilers

    def load_reconcilers(self) -> None:
        """Instantiate the enabled reconciler plugins from the registry."""
        names = self.config.enabled_reconcilers
        for name in names or self.registry.list_reconciler_plugins():
            try:
                self._reconcilers[name] = self.registry.get_reconciler_plugin(name)
            except ValueError as e:
                logger.warning(f"Skipping reconciler '{name}': {e}")
                continue
            logger.info(f"Loaded reconciler plugin: {name}")

    async def start(self):
        """Start the event watch, the periodic resync and the workers."""
        logger.info("Starting Operator Controller")
        self.running = True
        self._shutdown_event.clear()

        if not self._reconcilers:
            self.load_reconcilers()

        if self._event_bus:
            self._subscriber_id, subscription = await self._event_bus.subscribe()
            self._tasks.append(asyncio.create_task(self._watch_loop(subscription)))
        else:
            logger.warning("No event bus configured, relying on periodic resync only")

        self._tasks.append(asyncio.create_task(self._resync_loop()))
        for worker_id in range(self.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller; in-flight reconciles are allowed to finish."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()
        self.queue.shutdown()

        if self._event_bus and self._subscriber_id:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

    # ==================== Event routing ====================

    async def _watch_loop(self, subscription: EventSubscription) -> None:
        """Route every event from the bus until unsubscribed."""
        async for event in subscription:
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error handling event: {e}", exc_info=True)

    async def handle_event(self, event: ObjectEvent) -> int:
        """
        Enqueue the requests an event triggers.

        Returns:
            Number of requests enqueued.
        """
        if event.event_type == EventType.RECONCILED:
            return 0

        enqueued = 0
        for name, reconciler in self._reconcilers.items():
            for watch in reconciler.watches:
                if not watch.matches(event):
                    continue
                try:
                    requests = await watch.map(event.obj, self._ctx)
                except StoreError as e:
                    logger.error(
                        f"Cannot map {event.kind} {event.name} for reconciler "
                        f"'{name}': {e}"
                    )
                    continue

                for request in requests:
                    logger.debug(
                        f"{event.event_type.value} {event.kind} {event.name} "
                        f"-> {name} {request}"
                    )
                    self.queue.add((name, request))
                    enqueued += 1
        return enqueued

    async def _resync_loop(self) -> None:
        """Periodically re-queue every primary object."""
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.reconcile_interval
                )
            except asyncio.TimeoutError:
                continue

    async def resync(self) -> int:
        """
        Enqueue a request for every object of every primary watch.

        Returns:
            Number of requests enqueued.
        """
        enqueued = 0
        for name, reconciler in self._reconcilers.items():
            for watch in reconciler.watches:
                if not watch.is_primary:
                    continue
                try:
                    objects = await self.db.list_objects(watch.api_version, watch.kind)
                except StoreError as e:
                    logger.error(f"Cannot list {watch.kind} for resync: {e}")
                    continue

                for obj in objects:
                    metadata = obj.get("metadata", {})
                    request = ReconcileRequest(
                        metadata.get("namespace", ""), metadata["name"]
                    )
                    self.queue.add((name, request))
                    enqueued += 1

        if enqueued:
            logger.info(f"Resync queued {enqueued} object(s) for reconciliation")
        return enqueued

    # ==================== Workers ====================

    async def _worker(self, worker_id: int) -> None:
        """Take keys off the queue until it shuts down."""
        logger.debug(f"Reconcile worker {worker_id} started")
        while True:
            key = await self.queue.get()
            if key is None:
                break
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
        logger.debug(f"Reconcile worker {worker_id} stopped")

    async def process(self, key: QueueKey) -> None:
        """Run one reconcile and schedule its retry, if any."""
        name, request = key
        reconciler = self._reconcilers.get(name)
        if reconciler is None:
            logger.warning(f"No reconciler '{name}' loaded, dropping {request}")
            return

        start_time = time.monotonic()
        try:
            result = await reconciler.reconcile(request, self._ctx)
        except Exception as e:
            logger.error(
                f"Reconciler '{name}' raised while reconciling {request}: {e}",
                exc_info=True,
            )
            self.queue.add_after(key, self.config.reconcile_wait)
            return
        duration = time.monotonic() - start_time

        if result.success:
            logger.info(
                f"Reconciled {request} with '{name}' in {duration:.2f}s: "
                f"{result.message}"
            )
            await self._publish_reconciled(reconciler, request)
        else:
            logger.warning(
                f"Reconcile of {request} with '{name}' failed after "
                f"{duration:.2f}s: {result.message}"
            )

        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)

    async def _publish_reconciled(
        self, reconciler: ReconcilerPlugin, request: ReconcileRequest
    ) -> None:
        if not self._event_bus:
            return
        primary = next((w for w in reconciler.watches if w.is_primary), None)
        if primary is None:
            return
        obj: Dict[str, Any] = {
            "apiVersion": primary.api_version,
            "kind": primary.kind,
            "metadata": {"namespace": request.namespace, "name": request.name},
        }
        await self._event_bus.publish(
            ObjectEvent.from_object(EventType.RECONCILED, obj)
        )

    async def trigger_reconciliation(self, obj: Dict[str, Any]) -> bool:
        """
        Manually trigger reconciliation of an object.

        Returns:
            True if a reconciler owns the object's kind and it was queued.
        """
        kind = obj.get("kind", "")
        metadata = obj.get("metadata", {})
        request = ReconcileRequest(metadata.get("namespace", ""), metadata["name"])
        for name, reconciler in self._reconcilers.items():
            if kind in reconciler.resource_types:
                logger.info(f"Manually triggering reconciliation of {kind} {request}")
                self.queue.add((name, request))
                return True
        logger.warning(f"No reconciler handles {kind}, cannot reconcile {request}")
        return False
