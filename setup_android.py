#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
#
# setup_android.py - set up the Android SDK command-line tools in CI
#
# Copyright (C) 2021, Hans-Christoph Steiner <hans@eds.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import argparse
import configparser
import hashlib
import io
import json
import os
import platform as _platform
import posixpath
import re
import shutil
import stat
import subprocess
import sys
import tarfile
import tempfile
import types
import uuid
import zipfile
from pathlib import Path
from urllib.parse import urlparse

import argcomplete
import requests
from looseversion import LooseVersion


# cmdline-tools build number -> the version in its source.properties
VERSIONS = types.MappingProxyType(
    {
        '12266719': '16.0',
        '11479570': '13.0',
        '11076708': '12.0',
        '10406996': '11.0',
        '9862592': '10.0',
        '9477386': '9.0',
        '9123335': '8.0',
        '8512546': '7.0',
    }
)

COMMANDLINE_TOOLS_URL = (
    'https://dl.google.com/android/repository/'
    'commandlinetools-{os}-{version}_latest.zip'
)

# sys.platform -> the OS name used in the cmdline-tools zipball names
PLATFORM_NAMES = {
    'linux': 'linux',
    'darwin': 'mac',
    'win32': 'win',
}

# platform.machine() -> the arch names used by the GitHub runners
ARCH_NAMES = {
    'x86_64': 'x64',
    'amd64': 'x64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'i386': 'ia32',
    'i686': 'ia32',
    'x86': 'ia32',
}

HTTP_HEADERS = {'User-Agent': 'setup-android'}

CACHEDIR = Path.home() / '.cache/setup-android'
CACHE_KEY_PREFIX = 'setup-android'

# The parts of ANDROID_SDK_ROOT that are saved and restored, when they exist
CACHE_DIRS = (
    'cmdline-tools',
    'platform-tools',
    'tools',
    'licenses',
    'platforms',
    'build-tools',
    'system-images',
    'extras',
)

# sdkmanager prompts for each license, this answers the first ten of them
ACCEPT_INPUT = '\n'.join(['y'] * 10).encode()

# the inputs and their defaults as declared in action.yml
DEFAULT_INPUTS = {
    'cmdline-tools-version': '12266719',
    'accept-android-sdk-licenses': 'true',
    'log-accepted-android-sdk-licenses': 'true',
    'packages': 'tools platform-tools',
    'cache': 'false',
}

TRUE_VALUES = ('true', 'True', 'TRUE')
FALSE_VALUES = ('false', 'False', 'FALSE')

MATCHERS = {
    'problemMatcher': [
        {
            'owner': 'android-lint',
            'pattern': [
                {
                    'regexp': r'^(.+?):(\d+):\s+(Warning|Error):\s+(.+)$',
                    'file': 1,
                    'line': 2,
                    'severity': 3,
                    'message': 4,
                }
            ],
        }
    ]
}

WHITESPACE_REGEX = re.compile(r'\s')

# tarfile extraction filters came with 3.12 and the 3.8.17, 3.9.17,
# 3.10.12 and 3.11.4 security releases
EXTRACTION_FILTERS = hasattr(tarfile, 'data_filter')


def escape_data(s):
    return str(s).replace('%', '%25').replace('\r', '%0D').replace('\n', '%0A')


def escape_property(s):
    return escape_data(s).replace(':', '%3A').replace(',', '%2C')


def issue_command(command, message='', **properties):
    """Print a workflow command that the GitHub Actions runner will interpret"""
    line = '::' + command
    if properties:
        line += ' ' + ','.join(
            '%s=%s' % (k, escape_property(v)) for k, v in properties.items()
        )
    print(line + '::' + escape_data(message), flush=True)


def debug(message):
    issue_command('debug', message)


def warning(message):
    issue_command('warning', message)


def error(message):
    issue_command('error', message)


def get_input(name, args=None):
    """Get an input from the command line, the runner env, or action.yml

    The runner passes each input as INPUT_<NAME>, uppercased with spaces
    replaced by underscores.  Values given on the command line win.

    """
    value = None
    if args is not None:
        value = getattr(args, name.replace('-', '_'), None)
    if value is None:
        value = os.getenv('INPUT_' + name.replace(' ', '_').upper())
    if value is None:
        value = DEFAULT_INPUTS.get(name, '')
    return value.strip()


def get_boolean_input(name, args=None):
    value = get_input(name, args)
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValueError(
        'Input does not meet YAML 1.2 "Core Schema" specification: %s\n'
        'Support boolean input list: `true | True | TRUE | false | False | FALSE`'
        % name
    )


def _append_to_file_command(env_name, line):
    with open(os.environ[env_name], 'a', encoding='utf-8') as fp:
        fp.write(line + '\n')


def _key_value_message(name, value):
    delimiter = 'ghadelimiter_%s' % uuid.uuid4()
    return '{0}<<{1}\n{2}\n{1}'.format(name, delimiter, value)


def set_output(name, value):
    if os.getenv('GITHUB_OUTPUT'):
        _append_to_file_command('GITHUB_OUTPUT', _key_value_message(name, value))
    else:
        print()
        issue_command('set-output', value, name=name)


def export_variable(name, value):
    value = str(value)
    os.environ[name] = value
    if os.getenv('GITHUB_ENV'):
        _append_to_file_command('GITHUB_ENV', _key_value_message(name, value))
    else:
        issue_command('set-env', value, name=name)


def add_path(path):
    path = str(path)
    if os.getenv('GITHUB_PATH'):
        _append_to_file_command('GITHUB_PATH', path)
    else:
        issue_command('add-path', path)
    os.environ['PATH'] = path + os.pathsep + os.getenv('PATH', '')


def add_matcher(matchers_dir=None):
    """Register the problem matchers for the tools that got installed"""
    if matchers_dir is None:
        matchers_dir = os.getenv('RUNNER_TEMP') or tempfile.gettempdir()
    matchers_file = Path(matchers_dir) / 'setup-android-matchers.json'
    with matchers_file.open('w') as fp:
        json.dump(MATCHERS, fp, indent=2)
    debug('add matchers')
    print('##[add-matcher]%s' % matchers_file, flush=True)
    return matchers_file


def get_version_short(version_long):
    """Map a cmdline-tools build number to its short version

    Unknown build numbers are returned as is, so new releases can be used
    before they are added here.

    """
    return VERSIONS.get(version_long, version_long)


def check_version_long(version_long):
    if '/' in version_long or '\\' in version_long:
        raise ValueError('Malformed cmdline-tools-version!')


def list_versions():
    """Return the known (short, long) versions, newest first"""
    return sorted(
        ((short, long) for long, short in VERSIONS.items()),
        key=lambda v: LooseVersion(v[0]),
        reverse=True,
    )


def get_sdkmanager_name(platform=None):
    if platform is None:
        platform = sys.platform
    if platform == 'win32':
        return 'sdkmanager.bat'
    return 'sdkmanager'


def get_properties_dict(string):
    config = configparser.ConfigParser(
        delimiters=('='), interpolation=None, strict=False
    )
    config.read_string('[DEFAULT]\n' + string)
    return dict(config.items('DEFAULT'))


def find_sdkmanager(sdk_root, version_short, platform=None):
    """Find an installed sdkmanager that matches version_short

    The version-pinned install cmdline-tools/<version> always wins.
    Runner images often ship a cmdline-tools/latest instead, which is
    only used when its source.properties declares the same version.

    """
    sdkmanager_name = get_sdkmanager_name(platform)
    cmdline_tools = Path(sdk_root) / 'cmdline-tools'
    sdkmanager = cmdline_tools / version_short / 'bin' / sdkmanager_name
    if sdkmanager.exists():
        return sdkmanager

    latest = cmdline_tools / 'latest'
    source_properties_file = latest / 'source.properties'
    latest_sdkmanager = latest / 'bin' / sdkmanager_name
    if not (
        latest.exists()
        and source_properties_file.exists()
        and latest_sdkmanager.exists()
    ):
        return None

    source_properties = source_properties_file.read_text()
    print(
        'Found preinstalled sdkmanager in %s with following source.properties:'
        % latest
    )
    print(source_properties)
    if 'Pkg.Revision=%s' % version_short in source_properties:
        print('Preinstalled sdkmanager has the correct version')
        return latest_sdkmanager

    try:
        declared = get_properties_dict(source_properties).get('pkg.revision')
    except configparser.Error:
        declared = None
    print(
        'Wrong version in preinstalled sdkmanager: %s, wanted %s'
        % (declared, version_short)
    )
    return None


def get_commandline_tools_url(version_long, platform=None):
    """Return the zipball URL for this platform, or None if it is not supported"""
    if platform is None:
        platform = sys.platform
    os_name = PLATFORM_NAMES.get(platform)
    if os_name is None:
        return None
    return COMMANDLINE_TOOLS_URL.format(os=os_name, version=version_long)


def download_file(url, local_filename=None, dldir=None):
    if local_filename is None:
        if dldir is None:
            dldir = tempfile.gettempdir()
        local_filename = Path(dldir) / os.path.basename(urlparse(url).path)
    print('Downloading', url, 'into', local_filename)
    # the stream=True parameter keeps memory usage low
    r = requests.get(url, stream=True, allow_redirects=True, headers=HTTP_HEADERS)
    r.raise_for_status()
    with local_filename.open('wb') as f:
        for chunk in r.iter_content(chunk_size=io.DEFAULT_BUFFER_SIZE):
            if chunk:  # filter out keep-alive new chunks
                f.write(chunk)
                f.flush()
    return local_filename


def _extract_zipball(zipball, extract_to):
    """Unzip keeping the executable bits, which ZipFile.extract() drops"""
    extract_to = Path(extract_to)
    extract_to.mkdir(parents=True, exist_ok=True)
    root = extract_to.resolve()
    print('Unzipping to %s' % extract_to)
    try:
        with zipfile.ZipFile(str(zipball)) as zipfp:
            for info in zipfp.infolist():
                permbits = info.external_attr >> 16
                writefile = str(extract_to / info.filename)
                if stat.S_ISLNK(permbits):
                    link = extract_to / info.filename
                    link.parent.mkdir(0o755, parents=True, exist_ok=True)
                    link_target = zipfp.read(info).decode()
                    os.symlink(link_target, str(link))

                    try:
                        link.resolve().relative_to(root)
                    except (FileNotFoundError, ValueError):
                        link.unlink()
                        print(
                            'ERROR: Unexpected symlink target: %s -> %s'
                            % (info.filename, link_target)
                        )
                elif stat.S_ISDIR(permbits) or stat.S_IXUSR & permbits:
                    zipfp.extract(info.filename, path=str(extract_to))
                    os.chmod(writefile, 0o755)  # nosec bandit B103
                else:
                    zipfp.extract(info.filename, path=str(extract_to))
                    os.chmod(writefile, 0o644)  # nosec bandit B103
    except zipfile.BadZipFile as e:
        raise RuntimeError('Could not unzip %s: %s' % (zipball, e)) from e


def install_sdkmanager(sdk_root, version_short, version_long, platform=None):
    """Install cmdline-tools into ANDROID_SDK_ROOT unless a usable one is there

    The zipball unpacks to a cmdline-tools/ directory, which is renamed to
    cmdline-tools/<version_short>.  Whatever was left at that path by an
    earlier broken install is removed first, never merged into.

    Returns
    -------
    The path to sdkmanager, or None if this platform is not supported.

    """
    if platform is None:
        platform = sys.platform
    sdk_root = Path(sdk_root)
    cmdline_tools = sdk_root / 'cmdline-tools' / version_short

    sdkmanager = find_sdkmanager(sdk_root, version_short, platform)
    if sdkmanager is None:
        url = get_commandline_tools_url(version_long, platform)
        if url is None:
            error('Unsupported platform: %s' % platform)
            return None

        print('Downloading commandline tools from %s' % url)
        extract_to = sdk_root / 'cmdline-tools'
        staging = extract_to / 'cmdline-tools'
        with tempfile.TemporaryDirectory(prefix='.setup-android-') as dldir:
            zipball = download_file(url, dldir=dldir)
            if staging.exists():
                shutil.rmtree(str(staging))
            _extract_zipball(zipball, extract_to)

        # an earlier run can leave a half-installed target dir behind
        if cmdline_tools.exists():
            print('Removing leftovers from %s' % cmdline_tools)
            shutil.rmtree(str(cmdline_tools))
        print('Installing into', cmdline_tools)
        os.rename(str(staging), str(cmdline_tools))
        sdkmanager = cmdline_tools / 'bin' / get_sdkmanager_name(platform)

    # sdkmanager complains when this does not exist
    (sdk_root / 'repositories.cfg').open('w').close()
    debug('sdkmanager available at: %s' % sdkmanager)
    return sdkmanager


def get_arch():
    machine = _platform.machine().lower()
    return ARCH_NAMES.get(machine, machine)


def get_cache_key(platform, arch, version_long, packages):
    """Build a key covering everything that changes the installed files

    Packages are sorted first, so the order they were requested in does
    not matter.

    """
    packages_hash = hashlib.sha256(','.join(sorted(packages)).encode()).hexdigest()[:8]
    return '{prefix}-{platform}-{arch}-cmdlinetools-{version}-packages-{hash}'.format(
        prefix=CACHE_KEY_PREFIX,
        platform=platform,
        arch=arch,
        version=version_long,
        hash=packages_hash,
    )


def get_cache_paths(sdk_root):
    return [
        Path(sdk_root) / d for d in CACHE_DIRS if (Path(sdk_root) / d).exists()
    ]


def _is_safe_member(tarinfo):
    """Only plain files, dirs and links that stay inside the archive root"""
    name = posixpath.normpath(tarinfo.name)
    if posixpath.isabs(name) or name == '..' or name.startswith('../'):
        return False
    if tarinfo.issym():
        target = tarinfo.linkname
        if posixpath.isabs(target):
            return False
        target = posixpath.normpath(posixpath.join(posixpath.dirname(name), target))
    elif tarinfo.islnk():
        target = posixpath.normpath(tarinfo.linkname)
        if posixpath.isabs(target):
            return False
    else:
        return tarinfo.isfile() or tarinfo.isdir()
    return not (target == '..' or target.startswith('../'))


def _skip_unsafe_member(tarinfo):
    if _is_safe_member(tarinfo):
        return tarinfo
    print('Not caching %s, it points outside of ANDROID_SDK_ROOT' % tarinfo.name)
    return None


class DirectoryCache:
    """Keep cache entries as tarballs in a local directory

    Each key is stored once as <cache_dir>/<key>.tar.gz, with the member
    names relative to root, so a restore puts everything back in place.
    Links that point outside of root are left out when saving, and an
    archive holding any is refused as a whole before anything is written.

    """

    def __init__(self, cache_dir, root):
        self.cache_dir = Path(cache_dir)
        self.root = Path(root)

    def _archive(self, key):
        return self.cache_dir / (key + '.tar.gz')

    def restore(self, paths, key):
        archive = self._archive(key)
        if not archive.exists():
            return None
        print('Extracting', archive, 'into', self.root)
        with tarfile.open(str(archive), 'r:gz') as tar:
            members = tar.getmembers()
            unsafe = [m.name for m in members if not _is_safe_member(m)]
            if not unsafe:
                self.root.mkdir(parents=True, exist_ok=True)
                kwargs = {}
                if EXTRACTION_FILTERS:
                    kwargs['filter'] = 'data'
                tar.extractall(str(self.root), members=members, **kwargs)
        if unsafe:
            # a broken entry would otherwise block this key forever
            archive.unlink()
            raise ValueError(
                'Removed cache entry %s, it has unsafe members: %s'
                % (key, ', '.join(unsafe))
            )
        return key

    def save(self, paths, key):
        if not paths:
            raise ValueError('No existing paths to cache for key %s' % key)
        archive = self._archive(key)
        if archive.exists():
            print('Cache entry already exists for key: %s' % key)
            return
        self.cache_dir.mkdir(mode=0o0700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.' + key, dir=str(self.cache_dir))
        os.close(fd)
        try:
            with tarfile.open(tmp, 'w:gz') as tar:
                for path in paths:
                    tar.add(
                        str(path),
                        arcname=Path(path).relative_to(self.root).as_posix(),
                        filter=_skip_unsafe_member,
                    )
            os.replace(tmp, str(archive))
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)


def restore_cache(sdk_root, version_long, packages, enabled=True, backend=None):
    """Try to restore ANDROID_SDK_ROOT from the cache before installing

    Returns
    -------
    The cache key, whether or not anything was restored, so it can be
    used to save the cache afterwards.  None when caching is disabled.

    """
    if not enabled:
        print('Cache is disabled')
        return None
    if backend is None:
        backend = DirectoryCache(CACHEDIR, sdk_root)

    cache_key = get_cache_key(sys.platform, get_arch(), version_long, packages)
    print('Attempting to restore cache with key: %s' % cache_key)
    try:
        cache_hit = backend.restore(get_cache_paths(sdk_root), cache_key)
    except Exception as e:  # the cache must never fail the run
        warning('Failed to restore cache: %s' % e)
        return cache_key
    if cache_hit:
        print('Cache restored from key: %s' % cache_hit)
    else:
        print('Cache not found')
    return cache_key


def save_cache(sdk_root, cache_key, enabled=True, backend=None):
    if not cache_key or not enabled:
        return
    if backend is None:
        backend = DirectoryCache(CACHEDIR, sdk_root)

    try:
        print('Saving cache with key: %s' % cache_key)
        backend.save(get_cache_paths(sdk_root), cache_key)
        print('Cache saved successfully')
    except Exception as e:  # the cache must never fail the run
        warning('Failed to save cache: %s' % e)


def call_sdkmanager(sdkmanager, arg, print_output=True):
    """Run sdkmanager with a single argument, saying yes to the first prompts"""
    print('[command]%s %s' % (sdkmanager, arg), flush=True)
    subprocess.run(
        [str(sdkmanager), arg],
        input=ACCEPT_INPUT,
        stdout=None if print_output else subprocess.DEVNULL,
        check=True,
    )


def parse_packages(string):
    return [p.strip() for p in string.split(' ') if p.strip()]


def get_android_sdk_root():
    return Path(os.getenv('ANDROID_SDK_ROOT') or Path.home() / '.android' / 'sdk')


def relocate_sdk_root(sdk_root):
    """Move the SDK out of a path with spaces on the windows-2016 image

    The SDK is installed into "Program Files" there, and sdkmanager.bat
    fails with "Could not find or load main class Files".

    """
    if os.getenv('ImageOS') != 'win16' or not WHITESPACE_REGEX.search(str(sdk_root)):
        return sdk_root
    new_sdk_root = Path(WHITESPACE_REGEX.sub('-', str(sdk_root)))
    debug('moving %s to %s' % (sdk_root, new_sdk_root))
    new_sdk_root.parent.mkdir(parents=True, exist_ok=True)
    # os.rename() refuses to move across drives, that is intended
    os.rename(str(sdk_root), str(new_sdk_root))
    return new_sdk_root


def print_cache_key(args):
    """Output the cache key a run with these inputs would use

    This lets a workflow move the --cache-dir entry in and out of a cache
    that outlives the runner, before and after the real run.

    """
    version_long = get_input('cmdline-tools-version', args)
    check_version_long(version_long)
    packages = parse_packages(get_input('packages', args))
    cache_key = get_cache_key(sys.platform, get_arch(), version_long, packages)
    print(cache_key)
    set_output('cache-key', cache_key)
    return cache_key


def run(args):
    version_long = get_input('cmdline-tools-version', args)
    check_version_long(version_long)
    version_short = get_version_short(version_long)

    if args.sdk_root:
        sdk_root = Path(args.sdk_root)
    else:
        sdk_root = get_android_sdk_root()
    sdk_root = relocate_sdk_root(sdk_root)
    sdk_root.mkdir(parents=True, exist_ok=True)

    sdkmanager = install_sdkmanager(sdk_root, version_short, version_long)
    if sdkmanager is None:
        raise RuntimeError('Could not install sdkmanager on %s' % sys.platform)

    cache_enabled = get_boolean_input('cache', args)
    backend = None
    if args.cache_dir:
        backend = DirectoryCache(args.cache_dir, sdk_root)
    packages = parse_packages(get_input('packages', args))
    cache_key = restore_cache(
        sdk_root, version_long, packages, enabled=cache_enabled, backend=backend
    )

    if get_boolean_input('accept-android-sdk-licenses', args):
        print('Accepting Android SDK licenses')
        call_sdkmanager(
            sdkmanager,
            '--licenses',
            get_boolean_input('log-accepted-android-sdk-licenses', args),
        )
    for package in packages:
        call_sdkmanager(sdkmanager, package)

    set_output('ANDROID_COMMANDLINE_TOOLS_VERSION', version_long)
    export_variable('ANDROID_HOME', sdk_root)
    export_variable('ANDROID_SDK_ROOT', sdk_root)
    add_path(sdkmanager.parent)
    add_path(sdk_root / 'platform-tools')
    add_matcher()

    save_cache(sdk_root, cache_key, enabled=cache_enabled, backend=backend)


def main():
    parser = argparse.ArgumentParser(
        description='Install the Android SDK command-line tools and packages'
    )
    # action inputs, these override the INPUT_* env vars
    parser.add_argument('--cmdline-tools-version')
    parser.add_argument('--accept-android-sdk-licenses')
    parser.add_argument('--log-accepted-android-sdk-licenses')
    parser.add_argument('--packages', help='space-separated list of SDK packages')
    parser.add_argument('--cache', help='save and restore the SDK from the cache')

    parser.add_argument('--sdk-root', help='defaults to $ANDROID_SDK_ROOT')
    parser.add_argument('--cache-dir', help='where cache entries are kept')
    parser.add_argument(
        '--list-versions',
        action='store_true',
        help='print the known cmdline-tools versions',
    )
    parser.add_argument(
        '--print-cache-key',
        action='store_true',
        help='print the cache key for these inputs and exit',
    )

    argcomplete.autocomplete(parser)
    args = parser.parse_args()

    if args.list_versions:
        for short, long in list_versions():
            print('%s\t%s' % (long, short))
        return

    try:
        if args.print_cache_key:
            print_cache_key(args)
        else:
            run(args)
    except (
        OSError,
        RuntimeError,
        ValueError,
        requests.exceptions.RequestException,
        subprocess.CalledProcessError,
    ) as e:
        error(e)
        sys.exit(1)


if __name__ == "__main__":
    main()
