"""Infrastructure layer: persistence, notary HTTP adapter, logging, tasks."""
