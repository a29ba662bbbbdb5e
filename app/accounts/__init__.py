"""
Accounts app - the billing customer.

A slim, e-mail based user model. Each user is a billing customer and carries
the Stripe customer id once one has been created at the gateway.
"""
