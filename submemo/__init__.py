"""
SubMemo backend package.

A FastAPI service that tracks personal subscriptions and free trials, rolls
trials and recurring payments forward, and sends reminder emails before a
trial ends or a payment is due.
"""
