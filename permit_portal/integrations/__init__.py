"""permit_portal.integrations — backend store access.

All outbound HTTP calls to the portal store and the partner stores must go
through ``store_gateway.StoreGateway``, never via bare `requests` calls in
services or blueprints.

  postgrest.StoreQuery          — filter / order / select parameter builder
  store_gateway.StoreGateway    — read, write, storage and auth calls
"""
