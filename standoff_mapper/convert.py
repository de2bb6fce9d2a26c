"""
Loading of XML documents and conversion of input files into a StandoffStore.

Main API:
    store = convert_files(config, [["a.xml"], ["b1.xml", "b2.xml"]])
    result = convert_xml_string(config, "doc", "<doc>...</doc>")
"""

import logging
import os
import re

from lxml import etree
from natsort import natsorted

from .errors import ConversionError, ParseError
from .projector import Projector
from .store import StandoffStore

DOCTYPE_HEAD = 100
HTML5_DOCTYPE = b"<!DOCTYPE html>"
XML_DECLARATION_RE = re.compile(rb'^\s*(?:\xef\xbb\xbf)?<\?xml[^>]*\?>')


def inject_doctype(data, dtd):
    """
    Prepend a DTD to raw XML data (after the XML declaration) if it has no DOCTYPE yet.
    An HTML5 doctype is replaced. A document with another DOCTYPE is left as is.
    """
    if dtd is None:
        return data
    head = data[:DOCTYPE_HEAD]
    if HTML5_DOCTYPE in head:
        data = data.replace(HTML5_DOCTYPE, b"", 1)
        head = data[:DOCTYPE_HEAD]
    if b"<!DOCTYPE" in head:
        logging.warning("can not inject DTD because the document already has a DOCTYPE")
        return data
    dtd = dtd.encode("utf-8") + b"\n"
    m = XML_DECLARATION_RE.match(data)
    if m:
        return data[:m.end()] + b"\n" + dtd + data[m.end():]
    return dtd + data


def parse_document(data, inject_dtd=None, filename=None):
    """
    Parse XML data (bytes or str) and return the root element.

    Comments and processing instructions are dropped, internal entities are resolved,
    external entities are not and nothing is fetched from the network.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    data = inject_doctype(data, inject_dtd)
    parser = etree.XMLParser(remove_comments=True, remove_pis=True, resolve_entities="internal", no_network=True)
    try:
        return etree.fromstring(data, parser, base_url=filename)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Error parsing XML {filename or 'string'}: {e}") from e


def read_document(filename, inject_dtd=None):
    try:
        with open(filename, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ParseError(f"Error opening XML file {filename}: {e}") from e
    logging.debug("parsing %s", filename)
    return parse_document(data, inject_dtd, filename)


def read_inputfilelist(path):
    """
    Read a list of input files, one resource per line. Several files separated by tabs
    on one line are concatenated into a single resource.
    """
    groups = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            filenames = [name.strip() for name in line.rstrip("\r\n").split("\t") if name.strip()]
            if filenames:
                groups.append(filenames)
    return groups


def convert_documents(config, filenames, store=None, resource_id=None, provenance=False, id_prefix=None):
    """
    Convert one or more files into a single resource, its id derived from the first
    file unless given. The result is committed into the store if one is passed.
    """
    if resource_id is None:
        resource_id = config.resource_id(filenames[0])
    documents = [read_document(filename, config.inject_dtd) for filename in filenames]
    result = Projector(config, provenance=provenance, id_prefix=id_prefix).project(
        documents, resource_id, inputfiles=filenames)
    if store is not None:
        store.commit(result)
    return result


def convert_files(config, groups, store=None, ignore_errors=False, provenance=False, id_prefix=None):
    """
    Convert groups of input files (each group becomes one resource) into a store.

    With ignore_errors, a group that fails is logged and skipped, otherwise the first
    ConversionError is raised.
    """
    if store is None:
        store = StandoffStore()
    for filenames in groups:
        try:
            convert_documents(config, filenames, store, provenance=provenance, id_prefix=id_prefix)
        except ConversionError as e:
            if not ignore_errors:
                raise
            logging.warning("skipping %s: %s", ", ".join(filenames), e)
    return store


def convert_xml_string(config, resource_id, xmlstring, store=None, provenance=False, id_prefix=None):
    """Convert an XML document held in memory, the DTD of the configuration is not injected."""
    root = parse_document(xmlstring)
    result = Projector(config, provenance=provenance, id_prefix=id_prefix).project([root], resource_id)
    if store is not None:
        store.commit(result)
    return result


def list_input_dir(inputdir):
    """XML files of a directory, in natural sort order."""
    filenames = [os.path.join(inputdir, name) for name in os.listdir(inputdir) if name.lower().endswith(".xml")]
    return natsorted(filenames)
