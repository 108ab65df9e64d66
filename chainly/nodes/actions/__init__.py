"""Action nodes - generic data and control operations."""
