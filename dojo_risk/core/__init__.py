"""Core models, configuration, errors and the risk engine facade."""
