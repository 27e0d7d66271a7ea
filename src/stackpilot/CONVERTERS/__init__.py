"""Text renderers for plans and deployments."""
