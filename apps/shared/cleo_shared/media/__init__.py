"""Media helpers shared by the publish path and the media worker."""
