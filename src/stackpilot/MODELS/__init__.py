"""Data models for stack definitions, plans and product deployments."""
