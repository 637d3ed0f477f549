"""Task execution on workers: code encoding, pipeline steps and runners."""
