"""Agent child-process ownership."""
