"""HTTP API for the capture and dashboard collaborators."""
