"""
Type mapping and value conversion between warehouse type systems
"""

__all__ = ["map_type", "create_table_sql", "ValueConverter", "convert"]
