"""Library functions and classes shared by the roll."""
