"""Agent-written status artifact: reading and change watching."""
