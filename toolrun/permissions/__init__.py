"""Permission rules, decisions and the decision engine."""
