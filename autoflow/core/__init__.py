"""Graph model, execution types and the error taxonomy."""
