"""Adapters binding the batch layer to concrete storage backends."""
