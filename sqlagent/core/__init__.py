"""Core Layer — pure protocol logic, no IO, no network, no DB.

Invariants:
    - No module in core/ imports from services/, api/, or infrastructure/
    - Reducers and validators are pure and deterministic

Design Decisions:
    - Functional core separated from the imperative shell: the display reducer,
      answer extractor and SQL classifier are testable without mocks
"""
