from entity_mapper.migrations.migration import Migration
from entity_mapper.migrations.migrator import MigrationStatus, Migrator
from entity_mapper.migrations.schema import SchemaBuilder, TableBlueprint

__all__ = ["Migration", "MigrationStatus", "Migrator", "SchemaBuilder", "TableBlueprint"]
