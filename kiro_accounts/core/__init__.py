"""Core state: account store, login handshake, deep links, machine-id binding."""
