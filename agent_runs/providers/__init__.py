"""Backend integrations that advance a run by one budgeted slice."""
