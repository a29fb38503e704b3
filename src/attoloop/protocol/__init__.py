"""Shared record types exchanged between loop components."""
