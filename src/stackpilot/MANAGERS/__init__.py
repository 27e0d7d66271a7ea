"""Product-level orchestration and collaborator interfaces."""
