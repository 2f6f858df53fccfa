"""Navigator E2E Meta information.
   Navigator E2E encrypts JSON bodies and push events between a client
   and an aiohttp API using a per-session symmetric key.
"""
__title__ = 'navigator_e2e'
__description__ = (
   'Navigator E2E provides session-level end-to-end encryption '
   'for aiohttp request, response and event-stream payloads.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
