"""SOS dispatch and response coordination service."""
