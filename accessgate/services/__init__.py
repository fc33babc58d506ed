"""Provider adapters and the access-grant workflow."""
