"""Tool approval preferences: file store, reconciliation and the service that combines them."""
