"""Browser-facing session proxy: token cookies and silent refresh."""
