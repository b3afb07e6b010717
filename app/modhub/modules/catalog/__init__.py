"""
Module catalog: administration of "module" records.

- Records live in the configured backend (SQL table or hosted REST backend)
- The list view loads the collection once and filters/sorts/paginates in memory
- Archiving is a one-way soft delete (is_archived false -> true), audited
"""
