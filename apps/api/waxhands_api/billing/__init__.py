"""Payment provider integration and settlement."""
