"""Infrastructure layer: storage backends, scheduling and observability."""
