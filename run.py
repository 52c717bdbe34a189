#!/usr/bin/env python3
"""Single entrypoint for audits, remediation, queries and tests.

Usage:
  python run.py audit --root \\\\filer\\share --acl-export runs/run-20260202-124902 --directory-csv ad_export --out-csv out/analysis/findings.csv --split
  python run.py remediate --root \\\\filer\\share --acl-export runs/run-20260202-124902 --directory-csv ad_export --category disabled
  python run.py query --parquet out/parquet --out out/analysis
  python run.py test
"""
from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path


def setup_logging(log_file: str | None, verbose: bool) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def build_config(args: argparse.Namespace):
    from permaudit.config import CONFIG_PATH, load_config

    cfg = load_config(Path(args.config) if args.config else CONFIG_PATH)
    if args.workers:
        cfg.workers = max(1, args.workers)
    if args.transitive:
        cfg.transitive_membership = True
    if args.allow_partial:
        cfg.allow_partial_directory = True
    if args.keep_inherited_orphans:
        cfg.remove_inherited_orphans = False
    return cfg


def build_directory(args: argparse.Namespace):
    if args.directory_csv:
        from permaudit.directory import CsvDirectoryService

        return CsvDirectoryService(Path(args.directory_csv))
    if args.ldap_server:
        from permaudit.ldap_directory import LdapDirectoryService

        if not args.ldap_domain:
            raise SystemExit('--ldap-domain is required with --ldap-server')
        return LdapDirectoryService(
            args.ldap_server,
            args.ldap_domain,
            user=args.ldap_user,
            password=args.ldap_password or os.environ.get('PERMAUDIT_LDAP_PASSWORD'),
            use_ssl=args.ldap_ssl,
        )
    raise SystemExit('Either --directory-csv or --ldap-server is required')


def build_provider(args: argparse.Namespace):
    if args.live:
        from permaudit.acl_windows import WindowsAclProvider

        return WindowsAclProvider()
    if args.acl_export:
        from permaudit.acl_export import JsonAclProvider

        return JsonAclProvider(Path(args.acl_export))
    raise SystemExit('Either --acl-export or --live is required')


def audit(args: argparse.Namespace):
    """Run the audit and print a summary. Returns (session, provider) or exits."""
    from permaudit.errors import DirectoryQueryError, DirectoryUnavailable, PathUnreachable
    from permaudit.walker import run_audit

    cfg = build_config(args)
    directory = build_directory(args)
    try:
        provider = build_provider(args)
    except PathUnreachable as e:
        print(f"ACL source unreachable: {e}")
        raise SystemExit(2)

    try:
        session = run_audit(args.root, provider, directory=directory, config=cfg, progress=not args.quiet)
    except DirectoryUnavailable as e:
        print(f"Directory unavailable, nothing audited: {e}")
        raise SystemExit(3)
    except DirectoryQueryError as e:
        print(f"Directory data unusable (use --allow-partial to continue degraded): {e}")
        raise SystemExit(3)
    except PathUnreachable as e:
        print(f"Audit root unreachable: {e}")
        raise SystemExit(2)

    s = session.summary()
    print(f"Folders visited: {s['folders_visited']} (failed: {s['folders_failed']})")
    print(f"Orphaned: {s['orphaned']}  Disabled: {s['disabled']}  Redundant: {s['redundant']}")
    if session.snapshot.degraded:
        print(f"Directory snapshot was degraded: {'; '.join(session.snapshot.gaps)}")
    if session.cancelled:
        print("Audit was cancelled before the walk finished")
    return session, provider


def write_audit_outputs(session, args: argparse.Namespace) -> None:
    from permaudit import report

    names = session.snapshot.names()
    out_csv = Path(args.out_csv) if args.out_csv else Path('out/analysis/findings.csv')
    report.write_findings_csv(session.findings, out_csv, names)
    print(f"Wrote findings to {out_csv}")
    if session.failures:
        fail_csv = out_csv.parent / 'folder_failures.csv'
        report.write_failures_csv(session.failures, fail_csv)
        print(f"Wrote {len(session.failures)} folder failures to {fail_csv}")
    if args.out_parquet:
        pq = report.write_findings_parquet(session.findings, Path(args.out_parquet), names)
        print(f"Wrote parquet to {pq}")
    if args.split:
        report.split_by_category(out_csv, out_csv.parent)
        print(f"Wrote category split files to {out_csv.parent}")


def run_audit_cmd(args: argparse.Namespace) -> int:
    session, _provider = audit(args)
    write_audit_outputs(session, args)
    return 0


def confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip() == 'YES'


def run_remediate(args: argparse.Namespace) -> int:
    from permaudit import report
    from permaudit.remediation import plan_remediation, run_remediation

    session, provider = audit(args)
    cfg = session.config
    plan = plan_remediation(session.findings, args.category, remove_inherited_orphans=cfg.remove_inherited_orphans)
    names = session.snapshot.names()

    print(f"\n{len(plan.removable)} {plan.category.value} finding(s) removable, {len(plan.skipped)} skipped")
    for f in plan.removable[:50]:
        print(f"  remove  {f.path}  {names.get(f.principal, f.principal)}")
    if len(plan.removable) > 50:
        print(f"  ... and {len(plan.removable) - 50} more")
    for f, reason in plan.skipped[:20]:
        print(f"  skip    {f.path}  {names.get(f.principal, f.principal)}: {reason}")

    if not plan.removable:
        print("Nothing to remediate")
        return 0

    confirmed = args.yes or confirm(f"Type YES to remove {len(plan.removable)} {plan.category.value} entr(y/ies): ")
    result = run_remediation(session.findings, plan.category, confirmed, provider, snapshot=session.snapshot,
                             config=cfg)
    s = result.summary()
    print(f"Succeeded: {s['succeeded']}  Failed: {s['failed']}  Skipped: {s['skipped']}")

    out_csv = Path(args.out_csv) if args.out_csv else Path(f'out/analysis/remediation_{plan.category.value}.csv')
    report.write_remediation_csv(result, out_csv, names)
    print(f"Wrote remediation results to {out_csv}")

    save_to = getattr(provider, 'save', None)
    if confirmed and save_to is not None and getattr(provider, 'dirty', False):
        target = Path(args.save_export) if args.save_export else Path('out/remediated_acls.json')
        save_to(target)
        print(f"Wrote updated ACL export to {target}")
    return 0 if not result.failed else 1


def run_query(args: argparse.Namespace) -> int:
    from permaudit.views import run_queries

    parquet_dir = Path(args.parquet)
    if not parquet_dir.exists():
        print(f"Parquet directory not found: {parquet_dir}")
        return 2
    run_queries(parquet_dir, Path(args.out))
    return 0


def run_tests(args: argparse.Namespace) -> int:
    # Run pytest using the same Python interpreter
    print("Running pytest...")
    res = subprocess.run([sys.executable, '-m', 'pytest', '-q'])
    py_res = res.returncode

    # Run pyright if available
    from shutil import which

    pr = which('pyright') or which(str(Path('.venv') / 'Scripts' / 'pyright'))
    if pr:
        print("Running pyright...")
        pr_res = subprocess.run([pr])
        return pr_res.returncode or py_res
    return py_res


def add_audit_args(a: argparse.ArgumentParser) -> None:
    a.add_argument('--root', required=True, help='Folder to audit (UNC or local path)')
    src = a.add_mutually_exclusive_group()
    src.add_argument('--acl-export', help='Folder ACL JSON file or run directory containing folderacls/')
    src.add_argument('--live', action='store_true', help='Read ACLs from the filesystem (Windows, pywin32)')
    a.add_argument('--directory-csv', help='Directory export with users.csv, groups.csv, memberships.csv')
    a.add_argument('--ldap-server')
    a.add_argument('--ldap-domain')
    a.add_argument('--ldap-user')
    a.add_argument('--ldap-password', help='Defaults to $PERMAUDIT_LDAP_PASSWORD')
    a.add_argument('--ldap-ssl', action='store_true')
    a.add_argument('--config', default=None, help='Audit config JSON (default: permaudit/audit_config.json)')
    a.add_argument('--workers', type=int, default=None)
    a.add_argument('--transitive', action='store_true', help='Count nested group membership for redundancy')
    a.add_argument('--allow-partial', action='store_true', help='Continue with a degraded directory snapshot')
    a.add_argument('--keep-inherited-orphans', action='store_true',
                   help='Never remove orphaned entries that are inherited')
    a.add_argument('--out-csv', default=None)
    a.add_argument('--log-file', default=None)
    a.add_argument('--quiet', action='store_true', help='No progress bar')
    a.add_argument('--verbose', action='store_true')


def main():
    p = argparse.ArgumentParser(prog='run.py')
    sp = p.add_subparsers(dest='cmd')

    a = sp.add_parser('audit')
    add_audit_args(a)
    a.add_argument('--out-parquet', default=None, help='Directory for findings.parquet')
    a.add_argument('--split', action='store_true', help='Write per-category CSVs')

    r = sp.add_parser('remediate')
    add_audit_args(r)
    r.add_argument('--category', required=True, choices=['orphaned', 'disabled', 'redundant'])
    r.add_argument('--yes', action='store_true', help='Skip the interactive confirmation')
    r.add_argument('--save-export', default=None, help='Where to write the updated ACL export')

    q = sp.add_parser('query')
    q.add_argument('--parquet', required=True, help='Directory holding findings parquet')
    q.add_argument('--out', default='out/analysis')

    t = sp.add_parser('test')
    # no args for test yet

    args = p.parse_args()
    if args.cmd in ('audit', 'remediate'):
        setup_logging(args.log_file, args.verbose)
    if args.cmd == 'audit':
        raise SystemExit(run_audit_cmd(args))
    elif args.cmd == 'remediate':
        raise SystemExit(run_remediate(args))
    elif args.cmd == 'query':
        raise SystemExit(run_query(args))
    elif args.cmd == 'test':
        raise SystemExit(run_tests(args))
    else:
        p.print_help()


if __name__ == '__main__':
    main()
