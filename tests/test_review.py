# This file is part of diffschema, free software licensed under the
# GNU General Public License, version 3 or (at your option) any later version.

import unittest

from diffschema import (
    ColumnType,
    MigrationReviewer,
    Schema,
    WarningLevel,
    diff_schemas,
    parse_create_table,
    review,
)


def schema(*ddls: str) -> Schema:
    return Schema.from_tables([parse_create_table(ddl) for ddl in ddls])


class TestMigrationReviewer(unittest.TestCase):
    def test_no_changes_no_warnings(self) -> None:
        ddl = "CREATE TABLE `t` (`id` int NOT NULL, PRIMARY KEY (`id`)) ENGINE=InnoDB"
        self.assertEqual(review(diff_schemas(schema(ddl), schema(ddl))), [])

    def test_dropped_table(self) -> None:
        warnings = review(diff_schemas(Schema(), schema("CREATE TABLE `old` (`id` int) ENGINE=InnoDB")))
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].level, WarningLevel.WARNING)
        self.assertIn("old", warnings[0].message)

    def test_new_table_without_primary_key(self) -> None:
        warnings = review(diff_schemas(schema("CREATE TABLE `log` (`msg` text) ENGINE=InnoDB"), Schema()))
        self.assertEqual([w.level for w in warnings], [WarningLevel.INFO])
        self.assertEqual(warnings[0].context, "Table: log")

    def test_foreign_key_column_count_mismatch(self) -> None:
        source = schema(
            "CREATE TABLE `c` (`a` int, `b` int, "
            "CONSTRAINT `c_fk` FOREIGN KEY (`a`,`b`) REFERENCES `p` (`id`)) ENGINE=InnoDB"
        )
        warnings = review(diff_schemas(source, Schema()))
        self.assertIn(WarningLevel.ERROR, [w.level for w in warnings])

    def test_dropped_column(self) -> None:
        source = schema("CREATE TABLE `t` (`id` int NOT NULL) ENGINE=InnoDB")
        target = schema("CREATE TABLE `t` (`id` int NOT NULL, `legacy` text) ENGINE=InnoDB")
        warnings = review(diff_schemas(source, target))
        self.assertEqual(len(warnings), 1)
        self.assertIn("legacy", warnings[0].message)

    def test_added_not_null_column(self) -> None:
        target = schema("CREATE TABLE `t` (`id` int NOT NULL) ENGINE=InnoDB")
        without_default = schema("CREATE TABLE `t` (`id` int NOT NULL, `n` int NOT NULL) ENGINE=InnoDB")
        with_default = schema("CREATE TABLE `t` (`id` int NOT NULL, `n` int NOT NULL DEFAULT '0') ENGINE=InnoDB")
        self.assertEqual(len(review(diff_schemas(without_default, target))), 1)
        self.assertEqual(review(diff_schemas(with_default, target)), [])

    def test_narrowed_column_and_null_to_not_null(self) -> None:
        source = schema("CREATE TABLE `t` (`code` varchar(10) NOT NULL) ENGINE=InnoDB")
        target = schema("CREATE TABLE `t` (`code` varchar(40) DEFAULT NULL) ENGINE=InnoDB")
        messages = [w.message for w in review(diff_schemas(source, target))]
        self.assertEqual(len(messages), 2)
        self.assertIn("may cause data loss", messages[0])
        self.assertIn("NULL to NOT NULL", messages[1])

    def test_default_charset_change_points_at_conversion(self) -> None:
        source = schema("CREATE TABLE `t` (`name` varchar(20)) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4")
        target = schema("CREATE TABLE `t` (`name` varchar(20)) ENGINE=InnoDB DEFAULT CHARSET=latin1")
        warnings = review(diff_schemas(source, target))
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].level, WarningLevel.WARNING)
        self.assertIn("CONVERT TO CHARACTER SET utf8mb4", warnings[0].message)

    def test_comment_change_has_no_warning(self) -> None:
        source = schema("CREATE TABLE `t` (`name` varchar(20)) ENGINE=InnoDB COMMENT='new'")
        target = schema("CREATE TABLE `t` (`name` varchar(20)) ENGINE=InnoDB")
        self.assertEqual(review(diff_schemas(source, target)), [])


class TestLossyChanges(unittest.TestCase):
    def assertLossy(self, old: ColumnType, new: ColumnType) -> None:
        self.assertTrue(MigrationReviewer.is_lossy_change(old, new), f"{old.to_sql()} -> {new.to_sql()}")

    def assertSafe(self, old: ColumnType, new: ColumnType) -> None:
        self.assertFalse(MigrationReviewer.is_lossy_change(old, new), f"{old.to_sql()} -> {new.to_sql()}")

    def test_lossy(self) -> None:
        self.assertLossy(ColumnType("varchar", ("255",)), ColumnType("varchar", ("100",)))
        self.assertLossy(ColumnType("varchar", ("255",)), ColumnType("char", ("10",)))
        self.assertLossy(ColumnType("decimal", ("10", "2")), ColumnType("decimal", ("8", "2")))
        self.assertLossy(ColumnType("decimal", ("10", "4")), ColumnType("decimal", ("10", "2")))
        self.assertLossy(ColumnType("decimal"), ColumnType("decimal", ("8",)))
        self.assertLossy(ColumnType("bigint"), ColumnType("int"))
        self.assertLossy(ColumnType("int"), ColumnType("int", unsigned=True))
        self.assertLossy(ColumnType("longtext"), ColumnType("text"))
        self.assertLossy(ColumnType("text"), ColumnType("varchar", ("255",)))
        self.assertLossy(ColumnType("mediumblob"), ColumnType("blob"))
        self.assertLossy(ColumnType("datetime"), ColumnType("date"))
        self.assertLossy(ColumnType("double"), ColumnType("float"))

    def test_safe(self) -> None:
        self.assertSafe(ColumnType("varchar", ("100",)), ColumnType("varchar", ("255",)))
        self.assertSafe(ColumnType("int"), ColumnType("bigint"))
        self.assertSafe(ColumnType("decimal", ("8", "2")), ColumnType("decimal", ("12", "2")))
        self.assertSafe(ColumnType("text"), ColumnType("longtext"))
        self.assertSafe(ColumnType("date"), ColumnType("datetime"))
        self.assertSafe(ColumnType("int", ("11",)), ColumnType("int"))


if __name__ == "__main__":
    unittest.main()
