"""Port interfaces."""
