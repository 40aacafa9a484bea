"""Upload credential module.

Bridges the chat session and the HTTP upload endpoint: a logged-in chat
user asks for a credential over the chat connection and presents it to the
upload endpoint as a bearer token.

Services:
    - TokenService: issues and verifies signed, time-bounded credentials.
"""
