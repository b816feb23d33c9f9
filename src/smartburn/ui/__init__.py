"""Qt bridges for a GUI front end."""
