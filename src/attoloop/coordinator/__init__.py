"""Iteration loop, verification cycle and run statistics."""
