"""
VaultRelay Relay

Stores incoming messages for note vaults, encrypting them for recipients
that have registered a public key.
"""
