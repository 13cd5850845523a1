"""
KaliSSH - AI-assisted remote security operations

A system for turning natural-language security intents into reviewed,
remotely executed shell commands with multi-model analysis.

Architecture:
- Each module is self-contained with clear interfaces
- Modules receive their collaborators at construction
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- llm: Model registry and backend client
- orchestrator: Multi-model fan-out, reconciliation and result cache
- executor: Remote command channel over SSH
- pipeline: Approval/execute/analyze session state machine
- history: In-memory audit ledger
- events: Progress streaming for executing sessions
- api: REST API models
"""

__version__ = "1.0.0"
