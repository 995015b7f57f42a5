"""
E-mail package.

Templates live in the Communications Service; use ``EmailClient``
(client.py) to send through its API.
"""
