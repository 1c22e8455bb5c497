"""HTTP surface for the OctoDoc intake engine."""
