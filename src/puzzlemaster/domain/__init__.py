"""
puzzlemaster: domain layer

Purpose
- Entity types, identifiers, the Result type and error values shared by the
  persistence and API layers.

Functional requirements
- Validation is pure: no I/O, no exceptions for untrusted input.
- The relationship map is the single declaration of parent/child edges and
  their deletion policy.
"""
