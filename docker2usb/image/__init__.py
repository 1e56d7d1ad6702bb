"""Image builders and the build pipeline."""
