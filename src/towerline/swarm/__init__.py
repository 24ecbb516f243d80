"""Workforce roster and swarm recruitment."""
