"""External collaborators: embeddings and JSON chat completions."""
