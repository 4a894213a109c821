"""Tenant Vault Meta information.
   Tenant Vault stores third-party integration credentials per team,
   encrypted and bound to their tenant.
"""
__title__ = 'tenant_vault'
__description__ = (
   'Tenant Vault stores third-party integration credentials '
   'encrypted and bound to isolated tenants.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/tenant-vault'
