"""Tests for the standoff-mapper command line."""
import unittest
import tempfile
import json
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from standoff_mapper.standoff_mapper import main

CONFIG = """
id_strip_suffix = [".xml"]

[[elements]]
path = "//p"
text = true
textsuffix = "\\n"
annotation = "TextSelector"
id = "{{ resource }}.{{ @n }}"
"""


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = self.write("config.toml", CONFIG)
        self.outdir = os.path.join(self.tmp.name, "out")

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name, content):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def read_output(self):
        with open(os.path.join(self.outdir, "annotations.json"), encoding="utf-8") as f:
            return json.load(f)

    def test_convert(self):
        doc = self.write("doc.xml", '<doc><p n="1">first</p><p n="2">second</p></doc>')
        self.assertEqual(main(["convert", "--config", self.config, "--inputfile", doc, "--outdir", self.outdir]), 0)
        with open(os.path.join(self.outdir, "doc.txt"), encoding="utf-8") as f:
            self.assertEqual(f.read(), "first\nsecond\n")
        data = self.read_output()
        self.assertEqual([a["id"] for a in data["annotations"]], ["doc.1", "doc.2"])
        self.assertNotIn("provenance", data["annotations"][0])

    def test_options(self):
        doc = self.write("doc.xml", '<doc><p n="1">first</p></doc>')
        self.assertEqual(main(["convert", "--config", self.config, "--inputfile", doc, "--outdir", self.outdir,
                               "--id-prefix", "urn:{resource}:", "--provenance"]), 0)
        annotation = self.read_output()["annotations"][0]
        self.assertEqual(annotation["id"], "urn:doc:doc.1")
        self.assertEqual(annotation["provenance"]["xpath"], "/doc/p")

    def test_failure_writes_nothing(self):
        good = self.write("good.xml", '<doc><p n="1">ok</p></doc>')
        bad = self.write("bad.xml", "<doc><p>no number</p></doc>")
        with self.assertLogs(level="ERROR"):
            code = main(["convert", "--config", self.config, "--inputfile", good, bad, "--outdir", self.outdir])
        self.assertEqual(code, 1)
        self.assertFalse(os.path.exists(self.outdir))

    def test_ignore_errors(self):
        good = self.write("good.xml", '<doc><p n="1">ok</p></doc>')
        bad = self.write("bad.xml", "<doc><p>no number</p></doc>")
        code = main(["convert", "--config", self.config, "--inputfile", bad, good, "--outdir", self.outdir,
                     "--ignore-errors"])
        self.assertEqual(code, 0)
        self.assertTrue(os.path.exists(os.path.join(self.outdir, "good.txt")))
        self.assertFalse(os.path.exists(os.path.join(self.outdir, "bad.txt")))

    def test_inputfilelist(self):
        first = self.write("vol1.xml", '<doc><p n="1">one</p></doc>')
        second = self.write("vol1b.xml", '<doc><p n="2">two</p></doc>')
        third = self.write("vol2.xml", '<doc><p n="1">three</p></doc>')
        filelist = self.write("files.txt", f"{first}\t{second}\n{third}\n")
        self.assertEqual(main(["convert", "--config", self.config, "--inputfilelist", filelist,
                               "--outdir", self.outdir]), 0)
        data = self.read_output()
        self.assertEqual([r["id"] for r in data["resources"]], ["vol1", "vol2"])
        with open(os.path.join(self.outdir, "vol1.txt"), encoding="utf-8") as f:
            self.assertEqual(f.read(), "one\ntwo\n")

    def test_inputdir(self):
        inputdir = os.path.join(self.tmp.name, "in")
        os.makedirs(inputdir)
        for n in (10, 2):
            with open(os.path.join(inputdir, f"page{n}.xml"), "w", encoding="utf-8") as f:
                f.write(f'<doc><p n="{n}">page {n}</p></doc>')
        self.assertEqual(main(["convert", "--config", self.config, "--inputdir", inputdir,
                               "--outdir", self.outdir]), 0)
        self.assertEqual([r["id"] for r in self.read_output()["resources"]], ["page2", "page10"])
        with self.assertLogs(level="ERROR"):
            code = main(["convert", "--config", self.config, "--inputdir", os.path.join(self.tmp.name, "nothere"),
                         "--outdir", self.outdir])
        self.assertEqual(code, 1)

    def test_check_config(self):
        self.assertEqual(main(["check_config", "--config", self.config]), 0)
        broken = self.write("broken.toml", '[[elements]]\npath = "//p"\nannotation = "TextSelector"\n')
        with self.assertLogs(level="ERROR"):
            self.assertEqual(main(["check_config", "--config", broken]), 1)


if __name__ == '__main__':
    unittest.main()
