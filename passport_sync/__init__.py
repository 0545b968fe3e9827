"""Passport Sync - OpenMRS observation synchronization service."""
