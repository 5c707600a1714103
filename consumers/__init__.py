"""
Domain consumers — one per job queue.

- CustomerConsumer: customer.jobs → customer mutations, customer.events
- CampaignConsumer: campaign.jobs → campaign delivery, campaign.events
"""
