"""Migrate the contents of a Kubernetes PersistentVolumeClaim to another one."""

__version__ = "0.1.0"
