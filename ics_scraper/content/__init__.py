"""Page cleaning, chunk scoring and structured-data discovery."""
