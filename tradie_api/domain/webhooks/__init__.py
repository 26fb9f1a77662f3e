"""Outgoing webhooks: event taxonomy, delivery records and the dispatcher"""
