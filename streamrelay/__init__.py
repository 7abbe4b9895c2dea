"""SSE relay between browser chat clients and a streaming completion API."""
