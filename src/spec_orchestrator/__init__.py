"""Spec Orchestrator - task/review state machine for autonomous coding agents."""

__version__ = "0.1.0"
