"""TradieConnect integration: SSO, credential storage, remote sessions and form sync"""
