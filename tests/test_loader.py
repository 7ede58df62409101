# This file is part of diffschema, free software licensed under the
# GNU General Public License, version 3 or (at your option) any later version.

import os
import tempfile
import unittest
from unittest.mock import patch

import mysql.connector

from diffschema import (
    ParseError,
    SchemaConnectionError,
    SchemaIOError,
    SchemaLoader,
    UnsupportedFeatureError,
    extract_create_statements,
    split_statements,
)
from fake_mysql import FakeConnection


DUMP = """-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)
--
-- Host: localhost    Database: shop
/*!40101 SET @OLD_CHARACTER_SET_CLIENT=@@CHARACTER_SET_CLIENT */;
/*!40101 SET NAMES utf8mb4 */;

--
-- Table structure for table `customers`
--

DROP TABLE IF EXISTS `customers`;
/*!40101 SET @saved_cs_client     = @@character_set_client */;
/*!50503 SET character_set_client = utf8mb4 */;
CREATE TABLE `customers` (
  `id` int NOT NULL AUTO_INCREMENT,
  `note` varchar(100) DEFAULT 'a;b',
  PRIMARY KEY (`id`)
) ENGINE=InnoDB AUTO_INCREMENT=3 DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_0900_ai_ci;
/*!40101 SET character_set_client = @saved_cs_client */;

LOCK TABLES `customers` WRITE;
INSERT INTO `customers` VALUES (1,'x; CREATE TABLE `fake` (`a` int)'),(2,NULL);
UNLOCK TABLES;

DROP TABLE IF EXISTS `orders`;
CREATE TABLE `orders` (
  `id` int NOT NULL,
  `customer_id` int NOT NULL,
  PRIMARY KEY (`id`),
  KEY `customer_id` (`customer_id`),
  CONSTRAINT `orders_ibfk_1` FOREIGN KEY (`customer_id`) REFERENCES `customers` (`id`)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

/*!50001 CREATE ALGORITHM=UNDEFINED VIEW `big_orders` AS select 1 AS `id` */;
"""


LIVE_TABLES = {
    "customers": "CREATE TABLE `customers` (\n  `id` int NOT NULL,\n  PRIMARY KEY (`id`)\n) ENGINE=InnoDB",
    "orders": "CREATE TABLE `orders` (\n  `id` int NOT NULL,\n  `total` decimal(10,2) DEFAULT NULL\n) ENGINE=InnoDB",
    "payments": "CREATE TABLE `payments` (\n  `id` bigint NOT NULL\n) ENGINE=InnoDB",
}


class TestStatementSplitting(unittest.TestCase):
    def test_semicolons_in_strings_and_comments_do_not_split(self) -> None:
        text = "SELECT 'a;b'; -- c;d\nSELECT `x;y` /* ; */ ;\n\nSELECT 3"
        self.assertEqual(
            list(split_statements(text)),
            ["SELECT 'a;b'", "SELECT `x;y`", "SELECT 3"],
        )

    def test_only_create_table_statements_are_kept(self) -> None:
        statements = extract_create_statements(DUMP)
        self.assertEqual(len(statements), 2)
        self.assertTrue(statements[0].startswith("CREATE TABLE `customers`"))
        self.assertTrue(statements[1].startswith("CREATE TABLE `orders`"))


class TestLoadFile(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def write(self, content: str) -> str:
        path = os.path.join(self.tmpdir.name, "schema.sql")
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_load_dump(self) -> None:
        schema = SchemaLoader(workers=4).load("file", self.write(DUMP))
        self.assertEqual(sorted(schema.tables), ["customers", "orders"])
        customers = schema.tables["customers"]
        self.assertEqual(customers.get_column("note").default, "'a;b'")
        self.assertEqual(customers.options.collation, "utf8mb4_0900_ai_ci")

    def test_worker_count_does_not_change_the_result(self) -> None:
        path = self.write(DUMP)
        self.assertEqual(
            dict(SchemaLoader(workers=1).load_file(path).tables),
            dict(SchemaLoader(workers=8).load_file(path).tables),
        )

    def test_empty_file_is_an_empty_schema(self) -> None:
        self.assertEqual(len(SchemaLoader().load_file(self.write("-- nothing here\n")).tables), 0)

    def test_missing_file(self) -> None:
        with self.assertRaises(SchemaIOError):
            SchemaLoader().load_file(os.path.join(self.tmpdir.name, "missing.sql"))

    def test_bad_table_fails_the_whole_load(self) -> None:
        path = self.write(DUMP + "\nCREATE TABLE `legacy` (`id` int) ENGINE=MyISAM;\n")
        with self.assertRaises(UnsupportedFeatureError) as ctx:
            SchemaLoader(workers=2).load_file(path)
        self.assertEqual(ctx.exception.table, "legacy")

    def test_duplicate_table(self) -> None:
        path = self.write(
            "CREATE TABLE `t` (`a` int) ENGINE=InnoDB;\nCREATE TABLE `t` (`b` int) ENGINE=InnoDB;\n"
        )
        with self.assertRaises(ParseError) as ctx:
            SchemaLoader().load_file(path)
        self.assertEqual(ctx.exception.table, "t")

    def test_invalid_worker_count(self) -> None:
        with self.assertRaises(ValueError):
            SchemaLoader(workers=0)

    def test_invalid_data_source(self) -> None:
        with self.assertRaises(ValueError):
            SchemaLoader().load("ftp", "x")


class TestLoadDatabase(unittest.TestCase):
    @patch("diffschema.mysql.connector.connect")
    def test_load_database(self, mock_connect) -> None:
        mock_connect.side_effect = lambda **kwargs: FakeConnection(LIVE_TABLES)

        schema = SchemaLoader(workers=2).load("db", "app:s3cr@t@db.internal:3307~shop")

        self.assertEqual(schema.database_name, "shop")
        self.assertEqual(sorted(schema.tables), ["customers", "orders", "payments"])
        self.assertNotIn("active_users", schema.tables)
        self.assertEqual(schema.tables["orders"].get_column("total").column_type.params, ("10", "2"))
        # One connection to list the tables, then one per worker batch
        self.assertEqual(mock_connect.call_count, 3)
        self.assertEqual(mock_connect.call_args.kwargs, {
            "host": "db.internal",
            "port": 3307,
            "user": "app",
            "password": "s3cr@t",
            "database": "shop",
        })

    @patch("diffschema.mysql.connector.connect")
    def test_empty_database(self, mock_connect) -> None:
        mock_connect.side_effect = lambda **kwargs: FakeConnection({})
        schema = SchemaLoader().load_database("root:@localhost~empty")
        self.assertEqual(len(schema.tables), 0)
        self.assertEqual(mock_connect.call_count, 1)

    @patch("diffschema.mysql.connector.connect")
    def test_connection_failure(self, mock_connect) -> None:
        mock_connect.side_effect = mysql.connector.Error("Can't connect to MySQL server")
        with self.assertRaises(SchemaConnectionError) as ctx:
            SchemaLoader().load_database("root:pw@localhost~shop")
        self.assertIn("shop", str(ctx.exception))

    @patch("diffschema.mysql.connector.connect")
    def test_unparseable_table_fails_the_whole_load(self, mock_connect) -> None:
        tables = dict(LIVE_TABLES, archive="CREATE TABLE `archive` (`id` int) ENGINE=ARCHIVE")
        mock_connect.side_effect = lambda **kwargs: FakeConnection(tables)
        with self.assertRaises(UnsupportedFeatureError):
            SchemaLoader(workers=3).load_database("root:pw@localhost~shop")


if __name__ == "__main__":
    unittest.main()
