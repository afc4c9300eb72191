"""Package data shipped with nixforge (the default build wrapper)."""
