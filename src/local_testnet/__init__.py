"""Orchestrator for ephemeral local execution/consensus test networks."""
