import abc

from entity_mapper.connection import Connection
from entity_mapper.migrations.schema import SchemaBuilder


class Migration(abc.ABC):
    @abc.abstractmethod
    def up(self, schema: SchemaBuilder) -> None:
        pass

    @abc.abstractmethod
    def down(self, schema: SchemaBuilder) -> None:
        pass

    def post_up(self, connection: Connection) -> None:
        """Runs after the migration was recorded, e.g. to seed rows. Failures do not undo ``up``."""
