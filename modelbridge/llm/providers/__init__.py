"""Backend providers: request translation, response translation, stream parsing."""
