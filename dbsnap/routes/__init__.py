"""HTTP routes for dbsnap."""
