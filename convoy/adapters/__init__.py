"""Transport-facing adapters: message codec, SDK event conversion, connections."""
