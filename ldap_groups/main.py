"""
Main orchestrator for LDAP Groups Sync.

This module runs group syncs for the accounts of the configured account store,
collects run statistics and maps failures to process exit codes.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

import yaml

from ldap_groups.config import load_config, ConfigurationError
from ldap_groups.ldap_client import LDAPClient, LDAPClientError, LDAPConnectionError, LDAPAuthError
from ldap_groups.logging_setup import setup_logging, audit_logger
from ldap_groups.resolver import MembershipError
from ldap_groups.service import GroupSyncService, build_permissions, build_service, load_store_module
from ldap_groups.stores.base import AccountStoreError
from ldap_groups.sync import SyncError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ACCOUNT_FAILURES = 1
EXIT_CONFIGURATION = 2
EXIT_DIRECTORY = 3
EXIT_UNEXPECTED = 4


class SyncOrchestrator:
    """
    Runs group syncs for a batch of accounts.
    
    A failure for one account is logged and counted; it does not stop the
    others. Failures to reach or bind to the directory abort the run since
    no account could be synced.
    """
    
    def __init__(self, config_path: Optional[str] = None, service: Optional[GroupSyncService] = None):
        """
        Initialize sync orchestrator.
        
        Args:
            config_path: Path to configuration file
            service: Prebuilt service (configuration is then taken from it)
        """
        self.config_path = config_path
        self.service = service
        self.config = service.config if service else None
        
        self.sync_stats = {
            'accounts_processed': 0,
            'accounts_changed': 0,
            'accounts_failed': 0,
            'groups_added': 0,
            'groups_removed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'failures': {}
        }
    
    def run(self, accounts: Optional[List[str]] = None, dry_run: bool = False) -> int:
        """
        Run the group sync for the given accounts (all accounts if None).
        
        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()
            
            if self.service is None:
                self._load_configuration()
                setup_logging(self.config.get('logging', {}))
                self.service = build_service(self.config)
            
            logger.info("Starting LDAP group sync" + (" (dry run)" if dry_run else ""))
            
            for account in self.service.store.select_accounts(accounts):
                self._sync_account(account, dry_run)
            
            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self.service.search_cache.purge_expired()
            self._log_sync_summary()
            
            if self.sync_stats['accounts_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['accounts_failed']} account failures")
                return EXIT_ACCOUNT_FAILURES
            logger.info("Sync completed successfully")
            return EXIT_OK
        
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except (LDAPConnectionError, LDAPAuthError) as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_DIRECTORY
        except (SyncError, AccountStoreError) as e:
            logger.error(f"Sync failed: {e}")
            return EXIT_UNEXPECTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()
    
    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")
    
    def _sync_account(self, account: str, dry_run: bool):
        """Sync one account, recording the outcome in the run statistics."""
        self.sync_stats['accounts_processed'] += 1
        try:
            delta = self.service.group_sync.sync_account(account, dry_run=dry_run)
        except (LDAPConnectionError, LDAPAuthError):
            raise
        except (MembershipError, LDAPClientError, AccountStoreError) as e:
            self.sync_stats['accounts_failed'] += 1
            self.sync_stats['failures'][account] = str(e)
            audit_logger.log_sync_failure(account, str(e))
            logger.error(f"Failed to sync groups for {account}: {e}")
            return
        
        if not delta.is_empty():
            self.sync_stats['accounts_changed'] += 1
        self.sync_stats['groups_added'] += len(delta.to_add)
        self.sync_stats['groups_removed'] += len(delta.to_remove)
    
    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats
        
        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"
        
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Accounts processed: {stats['accounts_processed']}")
        logger.info(f"Accounts changed: {stats['accounts_changed']}")
        logger.info(f"Accounts failed: {stats['accounts_failed']}")
        logger.info(f"Groups added: {stats['groups_added']}")
        logger.info(f"Groups removed: {stats['groups_removed']}")
        
        cache_stats = self.service.search_cache.get_stats()
        logger.info(f"Search cache: {cache_stats['hits']} hits, {cache_stats['misses']} misses")
    
    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.
        
        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }
        
        try:
            if self.config is None:
                self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status
        
        test_client = LDAPClient(self.config['ldap'])
        try:
            test_client.connect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful',
                'details': test_client.get_connection_stats()
            }
        except LDAPClientError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            test_client.disconnect()
        
        try:
            store = load_store_module(self.config.get('accounts', {}))
            health_status['checks']['accounts'] = {
                'status': 'pass',
                'message': f'{len(store.list_accounts())} accounts available'
            }
            store.close()
        except (SyncError, AccountStoreError) as e:
            health_status['checks']['accounts'] = {
                'status': 'fail',
                'message': f'Account store failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        
        return health_status
    
    def _cleanup(self):
        """Clean up resources."""
        if self.service:
            self.service.close()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='LDAP Groups Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--account', '-a', action='append', dest='accounts',
                        help='Account to sync (may be repeated; default all accounts)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Compute group changes without applying them')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--show-permissions', action='store_true',
                        help='Print permission tables with directory groups restricted')
    
    args = parser.parse_args()
    
    orchestrator = SyncOrchestrator(config_path=args.config)
    
    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)
    
    elif args.show_permissions:
        try:
            permissions = build_permissions(load_config(args.config))
        except (ConfigurationError, ValueError) as e:
            print(f"Error: {e}")
            sys.exit(EXIT_CONFIGURATION)
        print(yaml.safe_dump(permissions.to_dict(), default_flow_style=False, sort_keys=True))
        sys.exit(EXIT_OK)
    
    else:
        sys.exit(orchestrator.run(accounts=args.accounts, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
