"""Agent contract, built-in agents and the services that run and repair them."""
