"""OpenMRS to patient passport observation synchronization."""
