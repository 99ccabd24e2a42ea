import json
import logging
import os
import tomllib

import requests

from nexus_tags import ManifestDescriptor

# client for a Nexus hosted docker repository, which serves the
# docker registry v2 api under <host>/repository/<repository>/v2/
#
# only what the cli needs is implemented:
# - list images and tags
# - fetch an image manifest (schema 2)
# - delete a tag through its manifest digest

CREDENTIALS_FILE = ".credentials"

CREDENTIALS_TEMPLATE = """# Nexus Credentials
nexus_host = {host}
nexus_username = {username}
nexus_password = {password}
nexus_repository = {repository}
"""

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"


class RegistryError(Exception):

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def get_error_explanation(context, error_code):
    error_list = {"delete_tag_405": 'Deleting is not allowed, check that the repository is a hosted one '
                                    'and that the user has the "delete" privilege',
                  "get_tag_digest_404": "The tag does not exist for this image",
                  "list_tags_404": "The image does not exist in this repository"}

    key = "%s_%s" % (context, error_code)

    if key in error_list.keys():
        return(error_list[key])

    return ''


def write_credentials(path, host, username, password, repository):
    # json string escaping is valid toml basic string escaping
    content = CREDENTIALS_TEMPLATE.format(host=json.dumps(host),
                                          username=json.dumps(username),
                                          password=json.dumps(password),
                                          repository=json.dumps(repository))
    with open(path, "w") as f:
        f.write(content)
    logging.debug("[credentials] written to {0}".format(path))


def load_credentials(path=CREDENTIALS_FILE):
    if not os.path.exists(path):
        raise RegistryError(
            "credentials file {0} not found, run 'configure' first".format(path))

    with open(path, "rb") as f:
        try:
            credentials = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise RegistryError("could not parse {0}: {1}".format(path, e))

    for key in ("nexus_host", "nexus_repository"):
        if not credentials.get(key):
            raise RegistryError(
                "{0} is missing from {1}, run 'configure' again".format(key, path))
    return credentials


class Requests:

    def __init__(self, username=None, password=None, verify=True):
        self.session = requests.Session()
        self.session.verify = verify
        if username:
            self.session.auth = (username, password or '')

    def request(self, method, url, **kwargs):
        try:
            res = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise RegistryError("[registry] {0} {1} failed: {2}".format(method, url, e))

        if str(res.status_code)[0] != '2':
            msg = ' \n[error][registry] Request failed'
            msg += '\n[error][registry][request] method {0}: url: {1}'.format(method, res.url)
            msg += '\n[error][registry][request] headers: {0}'.format(res.request.headers)
            msg += '\n[error][registry][response] status: {0}'.format(res.status_code)
            msg += '\n[error][registry][response] headers: {0}'.format(res.headers)
            msg += '\n[error][registry][response] content: {0}'.format(res.content)
            logging.debug(msg)
        else:
            logging.debug("[registry][request] method {0}: url: {1}: accept".format(method, res.url))
        return res


# class to manipulate the registry
class Registry:

    # this is required for proper digest processing
    HEADERS = {"Accept": MANIFEST_V2}

    def __init__(self, host, repository, username=None, password=None, no_validate_ssl=False):
        self.hostname = host.rstrip('/')
        self.repository = repository
        self.base_path = "/repository/{0}/v2/".format(repository)
        self.http = Requests(username, password, verify=not no_validate_ssl)

    @staticmethod
    def create(credentials, no_validate_ssl=False):
        return Registry(credentials['nexus_host'],
                        credentials['nexus_repository'],
                        credentials.get('nexus_username'),
                        credentials.get('nexus_password'),
                        no_validate_ssl)

    def send(self, path, method="GET", headers=None, context=None):
        if not headers:
            headers = self.HEADERS

        result = self.http.request(
            method,
            "{0}{1}{2}".format(self.hostname, self.base_path, path),
            headers=headers
        )

        if str(result.status_code)[0] == '2':
            return result

        msg = "{0} {1} failed with status {2}".format(method, path, result.status_code)
        if context:
            explanation = get_error_explanation(context, result.status_code)
            if explanation:
                msg += ": " + explanation
        raise RegistryError(msg, result.status_code)

    def _json(self, result):
        try:
            return json.loads(result.text)
        except ValueError:
            raise RegistryError("invalid json response from {0}".format(result.url))

    def list_images(self):
        result = self.send('_catalog', headers={"Accept": "application/json"})
        return self._json(result).get('repositories') or []

    def list_tags(self, image_name):
        result = self.send("{0}/tags/list".format(image_name),
                           headers={"Accept": "application/json"},
                           context="list_tags")
        return self._json(result).get('tags') or []

    def image_manifest(self, image_name, tag):
        result = self.send("{0}/manifests/{1}".format(image_name, tag))

        json_result = self._json(result)
        if json_result.get('schemaVersion') == 1:
            raise RegistryError(
                "{0}:{1} uses docker schemaVersion 1, which isn't supported".format(image_name, tag))

        try:
            return ManifestDescriptor.from_json(json_result)
        except (KeyError, TypeError) as e:
            raise RegistryError("malformed manifest for {0}:{1}: {2}".format(image_name, tag, e))

    def get_tag_digest(self, image_name, tag):
        image_headers = self.send("{0}/manifests/{1}".format(image_name, tag),
                                  method="HEAD", context="get_tag_digest")

        tag_digest = image_headers.headers.get('Docker-Content-Digest')
        if not tag_digest:
            raise RegistryError("no digest returned for {0}:{1}".format(image_name, tag))
        return tag_digest

    def delete_image_by_tag(self, image_name, tag):
        # nexus only deletes manifests by digest, not by tag
        tag_digest = self.get_tag_digest(image_name, tag)
        logging.debug("  tag {0} resolves to {1}".format(tag, tag_digest))

        result = self.send("{0}/manifests/{1}".format(image_name, tag_digest),
                           method="DELETE", context="delete_tag")
        if result.status_code != 202:
            raise RegistryError(
                "delete of {0}:{1} returned status {2}, expected 202".format(
                    image_name, tag, result.status_code), result.status_code)

        logging.info("done deleting image {0} tag {1}".format(image_name, tag))
