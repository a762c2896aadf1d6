"""Processor contract and registry.

Processors are registered explicitly, in order, once at process start. The
registration order is the order in which the dispatcher runs them for an item.
"""

import importlib
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence

import structlog

from .models import ProcessResult, QueueItem

logger = structlog.get_logger()


class ProcessorNotFoundError(LookupError):
    """No processor registered for a work type or name."""


class Processor(ABC):
    """A unit of logic that must run for every item of its work type.

    Subclasses set ``work_type`` and ``name``. ``name`` must be unique among
    processors sharing a work type: it is the identity of the tracking row.
    """

    work_type: str = ""
    name: str = ""

    @abstractmethod
    def process(self, item: QueueItem) -> ProcessResult:
        """Process a single queue item.

        Returns:
            ProcessResult.ok() on success, ProcessResult.fail(message) otherwise
        """
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.work_type}/{self.name}>"


class ProcessorRegistry:
    """Maps a work type to the processors that must run for it."""

    def __init__(self):
        self._processors: Dict[str, List[Processor]] = {}
        self._frozen = False

    def register(self, processor: Processor) -> None:
        """Append a processor to the list for its work type."""
        if self._frozen:
            raise RuntimeError("Processor registry is frozen; register before dispatching")

        work_type = processor.work_type
        name = processor.name
        if not work_type or not name:
            raise ValueError(f"Processor {processor!r} must declare work_type and name")

        processors = self._processors.setdefault(work_type, [])
        if any(p.name == name for p in processors):
            raise ValueError(f"Processor '{name}' already registered for type: {work_type}")

        processors.append(processor)
        logger.debug("processor_registered", work_type=work_type, processor=name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get_processors(self, work_type: str) -> List[Processor]:
        processors = self._processors.get(work_type)
        if not processors:
            raise ProcessorNotFoundError(f"No processors registered for type: {work_type}")
        return list(processors)

    def get_processor_by_name(self, name: str) -> Processor:
        for processors in self._processors.values():
            for processor in processors:
                if processor.name == name:
                    return processor

        raise ProcessorNotFoundError(f"No processor found with name: {name}")

    def has_processor(self, work_type: str) -> bool:
        return bool(self._processors.get(work_type))

    def list_work_types(self) -> List[str]:
        return list(self._processors)

    def list_processor_names(self, work_type: str) -> List[str]:
        return [p.name for p in self._processors.get(work_type, [])]


def _load_object(import_path: str):
    """Resolve "package.module:attribute"."""
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid processor path (expected 'module:attribute'): {import_path}")

    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from e


def build_registry(import_paths: Sequence[str], freeze: bool = True) -> ProcessorRegistry:
    """Build the registry from an explicit, ordered list of processor paths.

    Each entry names a Processor subclass, a factory returning a Processor, or
    a Processor instance. Entries are registered in list order.

    Args:
        import_paths: "module:attribute" strings, usually from config
        freeze: Make the registry immutable once built

    Returns:
        Populated ProcessorRegistry
    """
    registry = ProcessorRegistry()

    for import_path in import_paths:
        target = _load_object(import_path)
        processor = target if isinstance(target, Processor) else target()
        if not isinstance(processor, Processor):
            raise TypeError(f"{import_path} did not produce a Processor (got {type(processor)!r})")
        registry.register(processor)

    if freeze:
        registry.freeze()

    logger.info(
        "processor_registry_built",
        work_types=registry.list_work_types(),
        count=sum(len(registry.list_processor_names(t)) for t in registry.list_work_types()),
    )
    return registry
