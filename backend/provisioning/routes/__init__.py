"""
Customer Provisioning — API Routes Package
===========================================

Route Inventory:
    - customers.py:  POST /customers, GET /customers/{account_key},
                     POST /customers/reconcile
    - health.py:     GET  /health

Routes stay thin: parse the request, call the coordinator, return a model.
"""
