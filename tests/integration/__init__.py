"""End-to-end tests across QC, normalization and clustering."""
