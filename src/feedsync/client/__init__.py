"""Client module - Local store, remote API client, sync engine and CLI."""
