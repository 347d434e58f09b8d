"""
chatcore - runtime infrastructure for the chatflow engine.

Provides:
- Typed event bus
- Pydantic record base for persisted data
- Story catalog (manifest loading and schema validation)
"""
