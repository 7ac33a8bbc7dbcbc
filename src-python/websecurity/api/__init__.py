"""HTTP layer: gate middlewares, enforcement primitives and the token endpoint."""
