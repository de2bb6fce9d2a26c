"""Tests for document loading and file conversion."""
import unittest
import tempfile
import json
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from standoff_mapper.config import MappingConfig
from standoff_mapper.convert import (convert_documents, convert_files, inject_doctype, list_input_dir,
                                     parse_document, read_document, read_inputfilelist)
from standoff_mapper.errors import ConversionError, MissingVariable, ParseError
from standoff_mapper.store import StandoffStore

CONFIG = """
id_strip_suffix = [".xml"]

[[elements]]
path = "//p"
text = true
textsuffix = "\\n"
annotation = "TextSelector"
id = "{{ resource }}-{{ @n }}"
"""

DTD = '<!DOCTYPE doc [<!ENTITY copy "&#169;">]>'


class TestDoctype(unittest.TestCase):

    def test_inject(self):
        self.assertEqual(inject_doctype(b"<doc/>", "<!DOCTYPE doc>"), b"<!DOCTYPE doc>\n<doc/>")
        self.assertEqual(inject_doctype(b"<doc/>", None), b"<doc/>")

    def test_inject_after_declaration(self):
        data = inject_doctype(b'<?xml version="1.0"?><doc/>', "<!DOCTYPE doc>")
        self.assertEqual(data, b'<?xml version="1.0"?>\n<!DOCTYPE doc>\n<doc/>')

    def test_existing_doctype(self):
        data = b'<!DOCTYPE doc SYSTEM "doc.dtd"><doc/>'
        with self.assertLogs(level="WARNING"):
            self.assertEqual(inject_doctype(data, "<!DOCTYPE doc>"), data)

    def test_html5_doctype_replaced(self):
        data = inject_doctype(b"<!DOCTYPE html><html/>", "<!DOCTYPE html []>")
        self.assertEqual(data, b"<!DOCTYPE html []>\n<html/>")

    def test_parse_with_injected_entities(self):
        root = parse_document('<?xml version="1.0" encoding="UTF-8"?><doc>&copy; 2024</doc>', inject_dtd=DTD)
        self.assertEqual(root.text, "© 2024")

    def test_comments_removed(self):
        root = parse_document("<doc>a<!-- c -->b<?pi x?></doc>")
        self.assertEqual(len(root), 0)
        self.assertEqual("".join(root.itertext()), "ab")

    def test_syntax_error(self):
        with self.assertRaises(ParseError):
            parse_document("<doc><p></doc>")


class TestConvertFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = MappingConfig.from_toml_str(CONFIG)

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name, content):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_convert_documents(self):
        path = self.write("letter.xml", '<doc><p n="1">Dear friend,</p></doc>')
        store = StandoffStore()
        result = convert_documents(self.config, [path], store)
        self.assertEqual(result.resource_id, "letter")
        self.assertEqual(store.resources["letter"]["text"], "Dear friend,\n")
        self.assertEqual(store.annotations[0].id, "letter-1")

    def test_multi_document_resource(self):
        first = self.write("part1.xml", '<doc><p n="1">one</p></doc>')
        second = self.write("part2.xml", '<doc><p n="2">two</p></doc>')
        store = convert_files(self.config, [[first, second]])
        self.assertEqual(list(store.resources), ["part1"])
        self.assertEqual(store.resources["part1"]["text"], "one\ntwo\n")
        self.assertEqual([a.id for a in store.annotations], ["part1-1", "part1-2"])

    def test_errors(self):
        good = self.write("good.xml", '<doc><p n="1">ok</p></doc>')
        bad = self.write("bad.xml", "<doc><p>no n</p></doc>")
        broken = self.write("broken.xml", "<doc><p>")
        with self.assertRaises(MissingVariable):
            convert_files(self.config, [[good], [bad]])
        with self.assertRaises(ParseError):
            convert_files(self.config, [[broken]])
        with self.assertLogs(level="WARNING"):
            store = convert_files(self.config, [[bad], [good], [broken]], ignore_errors=True)
        self.assertEqual(list(store.resources), ["good"])

    def test_duplicate_resource(self):
        path = self.write("same.xml", '<doc><p n="1">x</p></doc>')
        store = convert_files(self.config, [[path]])
        with self.assertRaises(ConversionError):
            convert_files(self.config, [[path]], store)
        self.assertEqual(len(store.annotations), 1)

    def test_missing_file(self):
        with self.assertRaises(ParseError):
            read_document(os.path.join(self.tmp.name, "nothere.xml"))

    def test_external_entity_not_resolved(self):
        self.write("secret.txt", "TOPSECRET")
        path = self.write("ext.xml", '<!DOCTYPE doc [<!ENTITY ext SYSTEM "secret.txt">]><doc><p n="1">x &ext;</p></doc>')
        try:
            root = read_document(path)
        except ParseError:
            return
        self.assertNotIn("TOPSECRET", "".join(root.itertext()))

    def test_inputfilelist(self):
        path = self.write("list.txt", "a.xml\nb1.xml\tb2.xml\n\n  c.xml  \n")
        self.assertEqual(read_inputfilelist(path), [["a.xml"], ["b1.xml", "b2.xml"], ["c.xml"]])

    def test_list_input_dir(self):
        for name in ["p10.xml", "p2.xml", "p1.xml", "notes.txt"]:
            self.write(name, "<doc/>")
        names = [os.path.basename(path) for path in list_input_dir(self.tmp.name)]
        self.assertEqual(names, ["p1.xml", "p2.xml", "p10.xml"])

    def test_save(self):
        path = self.write("letter.xml", '<doc><p n="1">Dear friend,</p></doc>')
        store = convert_files(self.config, [[path]], provenance=True)
        outdir = os.path.join(self.tmp.name, "out")
        jsonpath = store.save(outdir)
        with open(os.path.join(outdir, "letter.txt"), encoding="utf-8") as f:
            self.assertEqual(f.read(), "Dear friend,\n")
        with open(jsonpath, encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual(data["resources"][0]["id"], "letter")
        annotation = data["annotations"][0]
        self.assertEqual(annotation["target"], {"type": "TextSelector", "resource": "letter", "begin": 0, "end": 12})
        self.assertEqual(annotation["provenance"], {"inputfile": path, "xpath": "/doc/p"})


if __name__ == '__main__':
    unittest.main()
