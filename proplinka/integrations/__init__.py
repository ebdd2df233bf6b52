"""External integrations: Stripe, webhooks, email and image processing."""
