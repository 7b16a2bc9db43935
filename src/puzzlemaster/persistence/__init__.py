"""
puzzlemaster: persistence layer

Purpose
- SQLite store (schema, migrations, transactions), the partial-update
  reducer and one gateway per entity kind.

Functional requirements
- Every gateway call is a single transaction.
- Gateway results are Result values; store faults never escape as exceptions.
"""
