import logging
import threading
import typing

import attr

from entity_mapper.errors import MappingError
from entity_mapper.metadata import EntityMetadata, build


logger = logging.getLogger(__name__)


@attr.s(auto_attribs=True)
class MetadataRegistry:
    entities_to_metadata: typing.Dict[type, EntityMetadata] = attr.Factory(dict)
    _lock: threading.RLock = attr.ib(factory=threading.RLock, init=False, repr=False)
    _building: typing.Set[type] = attr.ib(factory=set, init=False, repr=False)

    def get(self, entity_cls: type) -> EntityMetadata:
        metadata = self.entities_to_metadata.get(entity_cls)
        if metadata is not None:
            return metadata

        with self._lock:
            metadata = self.entities_to_metadata.get(entity_cls)
            if metadata is not None:
                return metadata
            if entity_cls in self._building:
                raise MappingError(
                    f"Circular metadata resolution through {entity_cls.__name__}, declare owner_key explicitly"
                )
            self._building.add(entity_cls)
            try:
                metadata = build(entity_cls, self.get)
            finally:
                self._building.discard(entity_cls)
            self.entities_to_metadata[entity_cls] = metadata
            logger.debug("Built metadata for %s (table %s)", entity_cls.__name__, metadata.table_name)
            return metadata

    def clear(self) -> None:
        with self._lock:
            self.entities_to_metadata.clear()


registry = MetadataRegistry()


def get_metadata(entity_cls: type) -> EntityMetadata:
    return registry.get(entity_cls)
