"""Payment gateway integration: signatures, webhook dispatch, billing store."""
