"""Fix, triage and monitoring services plus their git/workdir collaborators."""
