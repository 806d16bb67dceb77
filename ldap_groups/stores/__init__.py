"""Host account store adapters."""
