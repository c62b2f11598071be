"""Runnable services and operational scripts for the helpdesk job pipeline."""
