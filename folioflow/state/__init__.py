"""Durable ledgers and ephemeral conversation state."""
