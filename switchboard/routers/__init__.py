"""HTTP routers exposing the routing engine."""
