from sandbox_agent.presentation.toon import to_toon

__all__ = ["to_toon"]
