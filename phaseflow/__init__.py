"""
Phaseflow - Project Phase Transition Engine

Moves projects through a forward-only phase lifecycle:

- Rule registry: which trigger moves which phase where
- Transition engine: auto-apply or approval-gated transitions,
  append-only history, listener notifications
- Event coordinator: debounced, deduplicated relay between the engine and
  the calendar/meeting subsystem
- Calendar integration: meeting records linked to calendar events
- Notification engine and FastAPI router
"""

__version__ = "1.0.0"
