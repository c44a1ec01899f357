"""ConfirmIT receipt verification backend."""
