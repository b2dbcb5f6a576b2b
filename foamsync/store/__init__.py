"""Hosted store service and the write routines it shares with queue replay."""
