"""stackvault engine: snapshots, verification and restore for the n8n compose stack."""

__version__ = "0.1.0"
