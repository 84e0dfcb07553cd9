"""
Customer Provisioning — Services Layer
=======================================

Service Inventory:
    - CustomerLinkStore (link_store.py):       Identity Store over customer_links
    - PaymentProvider (provider_base.py):      provider contract
    - StripeProvider (stripe_provider.py):     Stripe implementation with retry
                                               and circuit breaker
    - ProvisioningCoordinator
      (provisioning_service.py):               ensure_customer + reconciliation

Instances are built once in the application lifespan from explicit settings
and shared through app.state; none of them reads configuration itself.
"""
