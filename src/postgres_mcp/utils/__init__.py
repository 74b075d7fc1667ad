"""Authorization and session building blocks."""
