"""
Broker abstractions:

- gateway: OrderGateway contract, OrderAck and SessionContext.
- paper_api: upstream paper-trading REST API adapter (requests).
- kite_gateway: Zerodha Kite adapter (kiteconnect).
- paper_broker: in-memory paper broker (no real orders).
- execution_router: picks the gateway for the configured broker kind.
"""
