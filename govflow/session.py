"""Session manager owning the single handle onto the governance platform."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, List, NamedTuple, Optional, TypeVar

from .cache import NullObjectCache, ObjectCache, make_cache
from .config import GovflowConfig, load_config
from .contracts import ObjectKind, SessionStatistics
from .engines import WorkflowEngine, get_engine
from .errors import AcquisitionFailed, NotInitialized, OperationFailed
from .utils.retry import sleep_before_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRELOADED_KINDS = (ObjectKind.WORKFLOW, ObjectKind.TASK_DEFINITION)
PRELOAD_LIMIT = 10


class AcquisitionStrategy(NamedTuple):
    """Named factory that may produce an engine handle."""

    name: str
    factory: Callable[[], Optional[WorkflowEngine]]


def default_strategies(config: GovflowConfig) -> List[AcquisitionStrategy]:
    return [AcquisitionStrategy("configured-engine", lambda: get_engine(config=config))]


class SessionManager:
    """Serializes all access to one platform handle.

    Every :meth:`execute` call holds an exclusive lock for the duration of
    one transaction, so a stuck operation blocks all later callers. Polling
    code must therefore sleep outside ``execute``. Operations must not call
    back into the same session manager.
    """

    def __init__(
        self,
        config: Optional[GovflowConfig] = None,
        strategies: Optional[List[AcquisitionStrategy]] = None,
        engine: Optional[WorkflowEngine] = None,
        retry_scale: float = 1.0,
    ) -> None:
        self._config = config or load_config()
        if engine is not None:
            strategies = [AcquisitionStrategy("provided-engine", lambda: engine)]
        self._strategies = strategies or default_strategies(self._config)
        self._retry_scale = retry_scale
        self._lock = threading.Lock()
        self._engine: Optional[WorkflowEngine] = None
        self._cache: ObjectCache = NullObjectCache()
        self._initialized = False
        self._initialized_at: Optional[datetime] = None
        self._init_time_ms: Optional[float] = None
        self._operation_count = 0
        self._operation_stats: Counter = Counter()

    @property
    def config(self) -> GovflowConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def initialized_at(self) -> Optional[datetime]:
        return self._initialized_at

    @property
    def operation_count(self) -> int:
        return self._operation_count

    # ------------------------------------------------------------------
    # Lifecycle
    def setup(self) -> "SessionManager":
        """Acquire, validate and prepare the handle. Safe to call twice."""
        if self._initialized:
            return self

        logger.info(f"Initializing session for {self._config.display_name}")
        start = time.perf_counter()
        self._engine = self._acquire_handle()
        self._validate_handle(self._engine)
        self._cache = make_cache(self._config)
        self._warm_cache(self._engine)
        self._init_time_ms = (time.perf_counter() - start) * 1000
        self._initialized_at = datetime.now(timezone.utc)
        self._initialized = True
        logger.info(
            f"Session ready in {self._init_time_ms:.0f} ms "
            f"(environment={self._config.environment.description}, "
            f"server={self._config.masked_server_url()}, "
            f"caching={'enabled' if self._cache.enabled else 'disabled'}, "
            f"rollback={self._config.should_rollback_transactions()})"
        )
        return self

    def close(self) -> None:
        """Tear down the handle."""
        if self._engine is None:
            return
        logger.info("Closing session")
        self.clear_caches()
        try:
            self._engine.close()
        except Exception as e:
            logger.error(f"Error closing engine handle: {e}")
        self._engine = None
        self._initialized = False
        logger.info(f"Total operations performed: {self._operation_count}")

    def __enter__(self) -> "SessionManager":
        return self.setup()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _acquire_handle(self) -> WorkflowEngine:
        rounds = max(1, self._config.max_retry_count())
        failures: List[str] = []
        for attempt in range(rounds):
            for strategy in self._strategies:
                try:
                    engine = strategy.factory()
                except Exception as e:
                    logger.warning(f"Acquisition strategy {strategy.name} failed: {e}")
                    failures.append(f"{strategy.name}: {e}")
                    continue
                if engine is not None:
                    logger.info(f"Engine handle acquired via {strategy.name}")
                    return engine
                logger.warning(f"Acquisition strategy {strategy.name} returned no handle")
                failures.append(f"{strategy.name}: no handle")
            if attempt + 1 < rounds:
                delay = sleep_before_retry(attempt, scale=self._retry_scale)
                logger.info(f"Retrying handle acquisition after {delay:.1f}s")
        raise AcquisitionFailed(
            "Failed to acquire an engine handle: " + "; ".join(failures)
        )

    def _validate_handle(self, engine: WorkflowEngine) -> None:
        with self._lock:
            try:
                if engine.get_configuration() is None:
                    logger.warning("System configuration not found")
                count = engine.count_objects(ObjectKind.IDENTITY)
                logger.info(f"Found {count} identities")
                admin = engine.get_object_by_name(
                    ObjectKind.IDENTITY, self._config.admin_identity
                )
                if admin is None:
                    logger.warning(
                        f"Administrator account '{self._config.admin_identity}' not found"
                    )
            except Exception as e:
                logger.error(f"Handle validation failed: {e}")

    def _warm_cache(self, engine: WorkflowEngine) -> None:
        if not self._cache.enabled:
            return
        with self._lock:
            for kind in PRELOADED_KINDS:
                try:
                    objects = engine.list_objects(kind, limit=PRELOAD_LIMIT)
                except Exception as e:
                    logger.warning(f"Could not preload {kind.value} objects: {e}")
                    continue
                for obj in objects:
                    self._cache.put((kind, obj.name), obj)
                logger.debug(f"Cached {len(objects)} {kind.value} objects")

    # ------------------------------------------------------------------
    # Access
    def acquire(self) -> WorkflowEngine:
        """Return the live handle."""
        if not self._initialized or self._engine is None:
            raise NotInitialized("Session not initialized")
        return self._engine

    def execute(
        self,
        operation: Callable[[WorkflowEngine], T],
        commit: bool = True,
        name: Optional[str] = None,
        isolated: bool = True,
    ) -> T:
        """Run ``operation`` inside one transaction on the handle.

        The transaction is committed when ``commit`` is true, unless
        ``isolated`` is set and the environment asks for test isolation
        rollback. Service mutations pass ``isolated=False`` so that what
        they report as done is actually saved. Any exception rolls back and
        is re-raised as ``OperationFailed``.
        """
        engine = self.acquire()
        op_name = name or getattr(operation, "__name__", type(operation).__name__)
        rollback_only = isolated and self._config.should_rollback_transactions()
        with self._lock:
            try:
                engine.start_transaction()
                result = operation(engine)
                if commit and not rollback_only:
                    engine.commit_transaction()
                    engine.decache()
                else:
                    engine.rollback_transaction()
                return result
            except Exception as e:
                self._rollback_quietly(engine)
                raise OperationFailed(f"Operation failed: {e}", operation=op_name) from e
            finally:
                self._operation_count += 1
                self._operation_stats[op_name] += 1

    def _rollback_quietly(self, engine: WorkflowEngine) -> None:
        try:
            engine.rollback_transaction()
            engine.decache()
        except Exception as e:
            logger.error(f"Error rolling back transaction: {e}")

    def resolve_cached(self, kind: ObjectKind, name: str) -> Optional[Any]:
        """Return a cached object of ``kind``/``name``, resolving it on a miss."""
        engine = self.acquire()
        key = (kind, name)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        with self._lock:
            obj = engine.get_object_by_name(kind, name)
        if obj is not None:
            self._cache.put(key, obj)
        return obj

    def clear_caches(self) -> None:
        self._cache.clear()
        logger.info("All caches cleared")

    def refresh(self) -> None:
        """Discard in-process representations and caches, keeping the handle."""
        engine = self.acquire()
        with self._lock:
            engine.decache()
            self._cache.clear()
        logger.debug("Session refreshed")

    def statistics(self) -> SessionStatistics:
        return SessionStatistics(
            initialized=self._initialized,
            environment=self._config.environment.value,
            operation_count=self._operation_count,
            operations=dict(self._operation_stats),
            cache_size=len(self._cache),
            caching_enabled=self._cache.enabled,
            init_time_ms=self._init_time_ms,
        )
