"""Services Layer — capability registry, confirmation gate, agent loop.

Invariants:
    - Capability routing uses an explicit name -> capability mapping (no auto-discovery)
    - Policy (confirm vs auto-approve) lives in the gate, never in executors
"""
