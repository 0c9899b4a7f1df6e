"""Generated ticket documents: validation, canonical titles, and idempotent upsert."""
