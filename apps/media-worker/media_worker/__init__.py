"""Media worker: claims captures and derives thumbnails and frames."""
