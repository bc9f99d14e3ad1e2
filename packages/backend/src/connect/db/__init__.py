"""Database layer: engine (pool), models, request contexts, stores."""
