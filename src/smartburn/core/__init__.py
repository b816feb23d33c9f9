"""Programming core: transports, connection monitoring and firmware handling."""
