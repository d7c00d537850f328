"""GraphQL documents sent to OpenCTI.

Field selections are shared between search, get-by-id and create so that
every path returns records ``models.RemoteIndicatorRecord`` and
``models.RemoteObservableRecord`` can parse.
"""

from __future__ import annotations

from typing import Any

SEARCH_PAGE_SIZE = 50

INDICATOR_FIELDS = """
    id
    standard_id
    entity_type
    pattern
    pattern_type
    creators {
      name
      entity_type
    }
    objectMarking {
      id
      definition
      x_opencti_color
    }
    confidence
    name
    description
    indicator_types
    x_opencti_score
    valid_from
    valid_until
    created_at
    updated_at
    createdBy {
      name
      entity_type
    }
    objectLabel {
      value
      color
    }
"""

OBSERVABLE_FIELDS = """
    id
    standard_id
    entity_type
    observable_value
    x_opencti_description
    x_opencti_score
    created_at
    updated_at
    createdBy {
      name
      entity_type
    }
    objectMarking {
      id
      definition
      x_opencti_color
    }
    creators {
      name
      entity_type
    }
    objectLabel {
      value
      color
    }
    ... on HashedObservable {
      hashes {
        algorithm
        hash
      }
    }
    ... on StixFile {
      hashes {
        algorithm
        hash
      }
    }
    ... on Artifact {
      hashes {
        algorithm
        hash
      }
    }
"""

_INDICATORS_CONNECTION = f"""
    indicators(
      search: $search
      filters: $filters
      first: {SEARCH_PAGE_SIZE}
      orderBy: created_at
      orderMode: desc
    ) {{
      edges {{
        node {{
          {INDICATOR_FIELDS}
        }}
      }}
    }}
"""

_OBSERVABLES_CONNECTION = f"""
    stixCyberObservables(
      search: $search
      filters: $filters
      first: {SEARCH_PAGE_SIZE}
      orderBy: created_at
      orderMode: desc
    ) {{
      edges {{
        node {{
          {OBSERVABLE_FIELDS}
        }}
      }}
    }}
"""

SEARCH_INDICATORS_AND_OBSERVABLES = f"""
  query GetIndicatorsAndObservables($search: String!, $filters: FilterGroup!) {{
    {_INDICATORS_CONNECTION}
    {_OBSERVABLES_CONNECTION}
  }}
"""

GET_INDICATOR = f"""
  query GetIndicator($search: String!, $filters: FilterGroup!) {{
    {_INDICATORS_CONNECTION}
  }}
"""

GET_OBSERVABLE = f"""
  query GetObservable($search: String!, $filters: FilterGroup!) {{
    {_OBSERVABLES_CONNECTION}
  }}
"""

GET_BY_ID_BY_KIND = {
    "indicator": GET_INDICATOR,
    "observable": GET_OBSERVABLE,
}

GET_MARKINGS = """
  query RootPrivateQuery {
    me {
      id
      allowed_marking {
        id
        entity_type
        standard_id
        definition_type
        definition
        x_opencti_color
        x_opencti_order
      }
    }
  }
"""

WHOAMI = """
  query Me {
    me {
      id
      name
      user_email
    }
    about {
      version
    }
  }
"""

SEARCH_LABELS = """
  query LabelsQuerySearchQuery($search: String!, $first: Int!) {
    labels(search: $search, first: $first) {
      edges {
        node {
          id
          value
          color
        }
      }
    }
  }
"""

SEARCH_IDENTITIES = """
  query IdentitySearchIdentitiesSearchQuery(
    $types: [String]
    $search: String
    $first: Int
  ) {
    identities(types: $types, orderBy: _score, orderMode: desc, search: $search, first: $first) {
      edges {
        node {
          __typename
          id
          standard_id
          identity_class
          name
          entity_type
        }
      }
      pageInfo {
        globalCount
      }
    }
  }
"""

CREATE_INDICATOR = f"""
  mutation CreateIndicator(
    $name: String!
    $pattern: String!
    $pattern_type: String!
    $observableType: String!
    $description: String
    $score: Int
    $labels: [String!]
    $markings: [String!]
    $createdBy: String
  ) {{
    indicatorAdd(input: {{
      name: $name
      pattern: $pattern
      pattern_type: $pattern_type
      x_opencti_main_observable_type: $observableType
      description: $description
      x_opencti_score: $score
      objectLabel: $labels
      objectMarking: $markings
      createdBy: $createdBy
    }}) {{
      {INDICATOR_FIELDS}
    }}
  }}
"""

CREATE_OBSERVABLE = f"""
  mutation CreateObservable(
    $type: String!
    $DomainName: DomainNameAddInput
    $EmailAddr: EmailAddrAddInput
    $StixFile: StixFileAddInput
    $IPv4Addr: IPv4AddrAddInput
    $IPv6Addr: IPv6AddrAddInput
    $MacAddr: MacAddrAddInput
    $Url: UrlAddInput
    $score: Int
    $description: String
    $labels: [String!]
    $markings: [String!]
    $createdBy: String
  ) {{
    stixCyberObservableAdd(
      type: $type
      DomainName: $DomainName
      EmailAddr: $EmailAddr
      IPv4Addr: $IPv4Addr
      IPv6Addr: $IPv6Addr
      MacAddr: $MacAddr
      Url: $Url
      StixFile: $StixFile
      x_opencti_score: $score
      x_opencti_description: $description
      createdBy: $createdBy
      objectLabel: $labels
      objectMarking: $markings
    ) {{
      {OBSERVABLE_FIELDS}
    }}
  }}
"""

LINK_INDICATOR_AND_OBSERVABLE = """
  mutation LinkFromIndicatorToObservableById(
    $indicatorId: StixRef!
    $observableId: StixRef!
  ) {
    stixCoreRelationshipAdd(
      input: {
        fromId: $indicatorId
        toId: $observableId
        relationship_type: "based-on"
      }
    ) {
      id
      toId
      fromId
    }
  }
"""

DELETE_INDICATOR = """
  mutation DeleteIndicator($id: ID!) {
    indicatorDelete(id: $id)
  }
"""

DELETE_OBSERVABLE = """
  mutation DeleteObservable($id: ID!) {
    stixCyberObservableEdit(id: $id) {
      delete
    }
  }
"""

DELETE_BY_KIND = {
    "indicator": DELETE_INDICATOR,
    "observable": DELETE_OBSERVABLE,
}

# Patch flags select which fieldPatch runs; values for unpatched fields are
# placeholders because the arguments are non-null in the schema.
EDIT_OBSERVABLE = """
  mutation EditObservableProperties(
    $id: ID!
    $authorId: [Any]! = ""
    $markings: [Any]! = []
    $score: [Any]! = 0
    $description: [Any]! = ""
    $patchAuthor: Boolean! = false
    $patchMarkings: Boolean! = false
    $patchScore: Boolean! = false
    $patchDescription: Boolean! = false
  ) {
    stixCyberObservableEdit(id: $id) {
      authorId: fieldPatch(input: { key: "createdBy", value: $authorId })
        @include(if: $patchAuthor) {
        createdBy { id, name }
      }
      markings: fieldPatch(input: { key: "objectMarking", value: $markings })
        @include(if: $patchMarkings) {
        id, objectMarking { id, definition }
      }
      score: fieldPatch(input: { key: "x_opencti_score", value: $score })
        @include(if: $patchScore) {
        id, x_opencti_score
      }
      description: fieldPatch(input: { key: "x_opencti_description", value: $description })
        @include(if: $patchDescription) {
        id, x_opencti_description
      }
    }
  }
"""


def _indicator_field_patch(alias: str, key: str, variable: str, selection: str) -> str:
    return f"""
  mutation EditIndicator{alias.capitalize()}($id: ID!, ${variable}: [Any]!) {{
    {alias}: indicatorFieldPatch(
      id: $id
      input: {{key: "{key}", value: ${variable}}}
    ) {{
      id
      {selection}
    }}
  }}
"""


# Edit field name -> (mutation, variable name) for indicators
EDIT_INDICATOR_BY_FIELD = {
    "author_id": (
        _indicator_field_patch("author", "createdBy", "authorId", "createdBy { id name }"),
        "authorId",
    ),
    "markings": (
        _indicator_field_patch("markings", "objectMarking", "markings", "objectMarking { id definition }"),
        "markings",
    ),
    "description": (
        _indicator_field_patch("description", "description", "description", "description"),
        "description",
    ),
    "score": (
        _indicator_field_patch("score", "x_opencti_score", "score", "x_opencti_score"),
        "score",
    ),
}


# =============================================================================
# Variables
# =============================================================================


def search_variables(value: str, exact_match: bool = False) -> dict[str, Any]:
    """Variables for ``SEARCH_INDICATORS_AND_OBSERVABLES``.

    Full-text search uses the quoted value. Exact matching adds
    ``name eq value OR value eq value`` filters.
    """
    filters: dict[str, Any] = {"mode": "or", "filters": [], "filterGroups": []}
    if exact_match:
        filters["filters"] = [
            {"key": "name", "operator": "eq", "values": [value], "mode": "or"},
            {"key": "value", "operator": "eq", "values": [value], "mode": "or"},
        ]
    return {"search": f'"{value}"', "filters": filters}


def id_filter_variables(item_id: str) -> dict[str, Any]:
    """Variables for ``GET_INDICATOR``/``GET_OBSERVABLE`` by id."""
    return {
        "search": "",
        "filters": {
            "mode": "or",
            "filters": [{"key": "id", "operator": "eq", "values": [item_id], "mode": "or"}],
            "filterGroups": [],
        },
    }
